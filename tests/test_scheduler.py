"""
Unit tests for the ingestion scheduler.

Tests bounded concurrency, deterministic ordering and failure isolation
using in-memory adapters.
"""

import asyncio

import pytest

from llm_usage_metrics.core.errors import SourceParseError
from llm_usage_metrics.core.events import create_usage_event
from llm_usage_metrics.ingest.source_adapter import (
    ParseFileResult,
    SkippedRowReason,
    SkippedRowTally,
    SourceAdapter,
)
from llm_usage_metrics.ingest.scheduler import (
    SourceFailure,
    clamp_parallelism,
    parse_adapter_events,
    parse_selected_adapters,
    raise_on_explicit_source_failures,
)


def _event(source, session_id):
    return create_usage_event(
        source=source,
        session_id=session_id,
        timestamp="2026-03-10T12:00:00Z",
        input_tokens=10,
        output_tokens=5,
    )


class FakeAdapter:
    """Adapter whose files parse into one event each, with a delay."""

    def __init__(self, source_id, files, delays=None, fail_on=None, skipped=None):
        self.id = source_id
        self.files = list(files)
        self.delays = delays or {}
        self.fail_on = fail_on
        self.skipped = skipped or {}
        self.parsed = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def discover_files(self):
        return list(self.files)

    async def parse_file(self, file_path):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(file_path, 0))
            self.parsed.append(file_path)
            if file_path == self.fail_on:
                raise OSError("disk error")
            events = [_event(self.id, file_path)]
            if file_path in self.skipped:
                return ParseFileResult(
                    events=events,
                    skipped_rows=sum(reason.count for reason in self.skipped[file_path]),
                    skipped_row_reasons=self.skipped[file_path],
                )
            return events
        finally:
            self.in_flight -= 1


class TestClampParallelism:
    """Test worker limit normalization."""

    @pytest.mark.parametrize("value,expected", [
        (4, 4),
        (2.9, 2),
        (0, 1),
        (-3, 1),
        (float("nan"), 1),
        (float("inf"), 1),
        ("8", 1),
        (None, 1),
        (True, 1),
    ])
    def test_clamp(self, value, expected):
        assert clamp_parallelism(value) == expected


class TestSkippedRowTally:
    """Test skipped-row bookkeeping."""

    def test_reasons_sorted_and_counted(self):
        tally = SkippedRowTally()
        tally.increment("invalid_json")
        tally.increment("invalid_event", 2)
        tally.increment("invalid_json")

        assert tally.total == 4
        assert tally.to_reasons() == [
            SkippedRowReason("invalid_event", 2),
            SkippedRowReason("invalid_json", 2),
        ]


class TestParseAdapterEvents:
    """Test parsing the files of a single adapter."""

    def test_fake_adapter_satisfies_protocol(self):
        assert isinstance(FakeAdapter("codex", []), SourceAdapter)

    @pytest.mark.asyncio
    async def test_no_files(self):
        result = await parse_adapter_events(FakeAdapter("codex", []), 4)
        assert result.source == "codex"
        assert result.events == []
        assert result.files_found == 0

    @pytest.mark.asyncio
    async def test_events_follow_discovery_order(self):
        """Verify slow early files do not reorder the output."""
        files = ["a", "b", "c", "d"]
        adapter = FakeAdapter("codex", files, delays={"a": 0.03, "b": 0.01})

        result = await parse_adapter_events(adapter, 4)

        assert [event.session_id for event in result.events] == files
        assert result.files_found == 4

    @pytest.mark.asyncio
    async def test_each_file_parsed_once_within_limit(self):
        files = [f"file-{index}" for index in range(10)]
        adapter = FakeAdapter("codex", files, delays={name: 0.001 for name in files})

        await parse_adapter_events(adapter, 3)

        assert sorted(adapter.parsed) == sorted(files)
        assert adapter.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_skipped_rows_are_aggregated(self):
        adapter = FakeAdapter(
            "codex",
            ["a", "b"],
            skipped={
                "a": [SkippedRowReason("invalid_json", 2)],
                "b": [SkippedRowReason("invalid_json", 1), SkippedRowReason("invalid_event", 1)],
            },
        )

        result = await parse_adapter_events(adapter, 2)

        assert result.skipped_rows == 4
        assert result.skipped_row_reasons == [
            SkippedRowReason("invalid_event", 1),
            SkippedRowReason("invalid_json", 3),
        ]

    @pytest.mark.asyncio
    async def test_file_failure_propagates(self):
        adapter = FakeAdapter("codex", ["a", "b"], fail_on="a")
        with pytest.raises(OSError, match="disk error"):
            await parse_adapter_events(adapter, 1)


class TestParseSelectedAdapters:
    """Test running several adapters together."""

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        healthy = FakeAdapter("pi", ["p1"])
        broken = FakeAdapter("codex", ["c1"], fail_on="c1")

        result = await parse_selected_adapters([healthy, broken], 2)

        assert [item.source for item in result.successful_results] == ["pi"]
        assert result.source_failures == [SourceFailure(source="codex", reason="disk error")]

    @pytest.mark.asyncio
    async def test_results_keep_adapter_order(self):
        slow = FakeAdapter("pi", ["p1"], delays={"p1": 0.02})
        fast = FakeAdapter("codex", ["c1"])

        result = await parse_selected_adapters([slow, fast], 2)

        assert [item.source for item in result.successful_results] == ["pi", "codex"]


class TestExplicitSourceFailures:
    """Test escalation of explicitly requested source failures."""

    def test_explicit_failure_raises(self):
        failures = [SourceFailure("codex", "disk error"), SourceFailure("pi", "bad")]
        with pytest.raises(SourceParseError) as exc_info:
            raise_on_explicit_source_failures(failures, {"codex"})
        assert str(exc_info.value) == "Failed to parse explicitly requested source(s): codex: disk error"

    def test_implicit_failures_are_soft(self):
        raise_on_explicit_source_failures([SourceFailure("codex", "disk error")], set())
