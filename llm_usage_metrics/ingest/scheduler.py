"""
Bounded-concurrency ingestion scheduler.

Each adapter's files are parsed by a small pool of asyncio workers that pull
the next unclaimed file index from a shared counter, so no file is parsed
twice. Adapters run concurrently with one another; a failing adapter becomes
a source failure rather than failing its siblings.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, List, Sequence, Union

from llm_usage_metrics.core.errors import SourceParseError
from llm_usage_metrics.core.events import UsageEvent

from .source_adapter import (
    ParseFileResult,
    SkippedRowReason,
    SourceAdapter,
    normalize_skipped_row_reasons,
    normalize_skipped_rows_count,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdapterParseResult:
    """Everything one adapter produced during a run."""
    source: str
    events: List[UsageEvent] = field(default_factory=list)
    files_found: int = 0
    skipped_rows: int = 0
    skipped_row_reasons: List[SkippedRowReason] = field(default_factory=list)


@dataclass(frozen=True)
class SourceFailure:
    source: str
    reason: str


@dataclass(frozen=True)
class ParsedAdaptersResult:
    """Successful results and failures, both in caller adapter order."""
    successful_results: List[AdapterParseResult] = field(default_factory=list)
    source_failures: List[SourceFailure] = field(default_factory=list)


def clamp_parallelism(limit: Any) -> int:
    """Clamp a worker limit to an integer >= 1; unusable input means 1."""
    if isinstance(limit, bool) or not isinstance(limit, (int, float)):
        return 1
    if not math.isfinite(limit) or limit <= 0:
        return 1
    return max(1, math.floor(limit))


def _to_parse_file_result(result: Union[List[UsageEvent], ParseFileResult]) -> ParseFileResult:
    if isinstance(result, ParseFileResult):
        return result
    return ParseFileResult(events=list(result))


def _error_reason(error: BaseException) -> str:
    return str(error) or type(error).__name__


async def parse_adapter_events(adapter: SourceAdapter, max_parallel: Any) -> AdapterParseResult:
    """Discover and parse every file of one adapter.

    Args:
        adapter: Source adapter to run
        max_parallel: Upper bound on concurrently parsed files

    Returns:
        Events in discovery order plus file and skipped-row statistics

    Raises:
        Exception: The first file-parse failure; the remaining workers are
            cancelled
    """
    files = await adapter.discover_files()
    if not files:
        return AdapterParseResult(source=adapter.id)

    parsed_by_file: List[List[UsageEvent]] = [[] for _ in files]
    skipped_rows_by_file = [0] * len(files)
    reason_counts: Dict[str, int] = {}
    next_file_index = 0

    async def worker() -> None:
        nonlocal next_file_index
        while next_file_index < len(files):
            file_index = next_file_index
            next_file_index += 1

            result = _to_parse_file_result(await adapter.parse_file(files[file_index]))
            parsed_by_file[file_index] = list(result.events)
            skipped_rows_by_file[file_index] = normalize_skipped_rows_count(result.skipped_rows)
            for reason in normalize_skipped_row_reasons(result.skipped_row_reasons):
                reason_counts[reason.reason] = reason_counts.get(reason.reason, 0) + reason.count

    worker_count = min(clamp_parallelism(max_parallel), len(files))
    workers = [asyncio.ensure_future(worker()) for _ in range(worker_count)]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise

    logger.debug("Parsed %d file(s) for source %s", len(files), adapter.id)

    return AdapterParseResult(
        source=adapter.id,
        events=[event for file_events in parsed_by_file for event in file_events],
        files_found=len(files),
        skipped_rows=sum(skipped_rows_by_file),
        skipped_row_reasons=[
            SkippedRowReason(reason=reason, count=reason_counts[reason])
            for reason in sorted(reason_counts)
        ],
    )


async def parse_selected_adapters(adapters: Sequence[SourceAdapter], max_parallel: Any) -> ParsedAdaptersResult:
    """Run all adapters concurrently, collecting failures instead of raising."""
    outcomes = await asyncio.gather(
        *(parse_adapter_events(adapter, max_parallel) for adapter in adapters),
        return_exceptions=True,
    )

    successful_results = []
    source_failures = []
    for adapter, outcome in zip(adapters, outcomes):
        if isinstance(outcome, AdapterParseResult):
            successful_results.append(outcome)
            continue
        if not isinstance(outcome, Exception):
            raise outcome
        logger.debug("Source %s failed to parse: %s", adapter.id, outcome)
        source_failures.append(SourceFailure(source=adapter.id, reason=_error_reason(outcome)))

    return ParsedAdaptersResult(successful_results=successful_results, source_failures=source_failures)


def raise_on_explicit_source_failures(
    source_failures: Sequence[SourceFailure],
    explicit_source_ids: Collection[str],
) -> None:
    """Escalate failures of explicitly requested sources.

    Raises:
        SourceParseError: Naming every failed explicit source and its reason
    """
    explicit_ids = {source_id.lower() for source_id in explicit_source_ids}
    explicit_failures = [
        failure for failure in source_failures if failure.source.lower() in explicit_ids
    ]
    if not explicit_failures:
        return

    details = "; ".join(f"{failure.source}: {failure.reason}" for failure in explicit_failures)
    raise SourceParseError(f"Failed to parse explicitly requested source(s): {details}")
