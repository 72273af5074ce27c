"""
Source adapter protocol and parse-result types.

An adapter discovers the files one agent tool writes and turns each file into
usage events. The scheduler only ever talks to adapters through this
protocol.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Protocol, Union, runtime_checkable

from llm_usage_metrics.core.events import UsageEvent


@dataclass(frozen=True)
class SkippedRowReason:
    """How many rows of a file were skipped for one reason."""
    reason: str
    count: int


@dataclass(frozen=True)
class ParseFileResult:
    """Events parsed from one file plus the rows that were skipped."""
    events: List[UsageEvent] = field(default_factory=list)
    skipped_rows: int = 0
    skipped_row_reasons: List[SkippedRowReason] = field(default_factory=list)


@runtime_checkable
class SourceAdapter(Protocol):
    """Interface every usage source implements."""

    id: str

    async def discover_files(self) -> List[str]:
        ...

    async def parse_file(self, file_path: str) -> Union[List[UsageEvent], ParseFileResult]:
        ...


class SkippedRowTally:
    """Per-reason counter of skipped rows."""

    def __init__(self):
        self._counts: Dict[str, int] = {}

    def increment(self, reason: str, count: int = 1) -> None:
        self._counts[reason] = self._counts.get(reason, 0) + count

    @property
    def total(self) -> int:
        return sum(self._counts.values())

    def to_reasons(self) -> List[SkippedRowReason]:
        return [
            SkippedRowReason(reason=reason, count=count)
            for reason, count in sorted(self._counts.items())
        ]


def normalize_skipped_rows_count(value: Any) -> int:
    """Coerce an adapter-reported skipped-row count into a non-negative int."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value) or value <= 0:
        return 0
    return int(value)


def normalize_skipped_row_reasons(reasons: Iterable[Any]) -> List[SkippedRowReason]:
    """Drop reasons without a name or with a non-positive count."""
    normalized = []
    for entry in reasons or []:
        if not isinstance(entry, SkippedRowReason):
            continue
        reason = entry.reason.strip() if isinstance(entry.reason, str) else ""
        count = normalize_skipped_rows_count(entry.count)
        if reason and count > 0:
            normalized.append(SkippedRowReason(reason=reason, count=count))
    return normalized
