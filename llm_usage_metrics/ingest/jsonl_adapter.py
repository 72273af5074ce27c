"""
Generic JSONL usage adapter.

Reads already-normalized usage records, one JSON object per line, from every
``*.jsonl`` file below a directory. Bad rows are counted and skipped; only an
unreadable file fails the source.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from llm_usage_metrics.core.events import UsageEvent, create_usage_event

from .source_adapter import ParseFileResult, SkippedRowTally

logger = logging.getLogger(__name__)

JSONL_SUFFIX = ".jsonl"

SKIP_INVALID_ENCODING = "invalid_encoding"
SKIP_INVALID_JSON = "invalid_json"
SKIP_NON_OBJECT_ROW = "non_object_row"
SKIP_INVALID_RECORD = "invalid_record"
SKIP_INVALID_EVENT = "invalid_event"

RawNumber = Optional[Union[int, float, str]]


class UsageEventRecord(BaseModel):
    """Schema of one JSONL usage row."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    timestamp: Union[datetime, str]
    session_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    repo_root: Optional[str] = None
    input_tokens: RawNumber = None
    output_tokens: RawNumber = None
    reasoning_tokens: RawNumber = None
    cache_read_tokens: RawNumber = None
    cache_write_tokens: RawNumber = None
    total_tokens: RawNumber = None
    cost_usd: RawNumber = None
    cost_mode: Optional[str] = Field(default=None, pattern=r"(?i)^\s*(explicit|estimated)\s*$")


def discover_jsonl_files(root_dir: Union[str, Path]) -> List[str]:
    """List ``*.jsonl`` files below ``root_dir`` in code-point order.

    A missing root yields no files. Unreadable subdirectories are skipped;
    an unreadable root propagates.
    """
    root = Path(root_dir)
    if not root.exists():
        return []

    files: List[str] = []
    _walk_directory(root, files, allow_permission_skip=False)
    return files


def _walk_directory(directory: Path, acc: List[str], allow_permission_skip: bool) -> None:
    try:
        entries = sorted(directory.iterdir(), key=lambda entry: entry.name)
    except PermissionError:
        if allow_permission_skip:
            logger.debug("Skipping unreadable directory %s", directory)
            return
        raise

    for entry in entries:
        if entry.is_dir():
            _walk_directory(entry, acc, allow_permission_skip=True)
        elif entry.is_file() and entry.name.lower().endswith(JSONL_SUFFIX):
            acc.append(str(entry))


class JsonlSourceAdapter:
    """SourceAdapter over a directory of normalized JSONL usage files."""

    def __init__(self, source_id: str, directory: Union[str, Path]):
        self.id = source_id
        self.directory = Path(directory).expanduser()

    async def discover_files(self) -> List[str]:
        return await asyncio.to_thread(discover_jsonl_files, self.directory)

    async def parse_file(self, file_path: str) -> ParseFileResult:
        return await asyncio.to_thread(self._parse_file_sync, file_path)

    def _parse_file_sync(self, file_path: str) -> ParseFileResult:
        path = Path(file_path)
        content = path.read_bytes()
        default_session_id = path.stem

        events: List[UsageEvent] = []
        tally = SkippedRowTally()

        for raw_line in content.splitlines():
            if not raw_line.strip():
                continue

            try:
                line = raw_line.decode("utf-8")
            except UnicodeDecodeError:
                tally.increment(SKIP_INVALID_ENCODING)
                continue

            try:
                raw_row = json.loads(line)
            except ValueError:
                tally.increment(SKIP_INVALID_JSON)
                continue

            if not isinstance(raw_row, dict):
                tally.increment(SKIP_NON_OBJECT_ROW)
                continue

            try:
                record = UsageEventRecord.model_validate(raw_row)
            except ValidationError:
                tally.increment(SKIP_INVALID_RECORD)
                continue

            try:
                events.append(self._to_usage_event(record, default_session_id))
            except ValueError:
                tally.increment(SKIP_INVALID_EVENT)

        return ParseFileResult(
            events=events,
            skipped_rows=tally.total,
            skipped_row_reasons=tally.to_reasons(),
        )

    def _to_usage_event(self, record: UsageEventRecord, default_session_id: str) -> UsageEvent:
        return create_usage_event(
            source=self.id,
            session_id=record.session_id or default_session_id,
            timestamp=record.timestamp,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            reasoning_tokens=record.reasoning_tokens,
            cache_read_tokens=record.cache_read_tokens,
            cache_write_tokens=record.cache_write_tokens,
            total_tokens=record.total_tokens,
            cost_usd=record.cost_usd,
            cost_mode=record.cost_mode,
            provider=record.provider,
            model=record.model,
            repo_root=record.repo_root,
        )
