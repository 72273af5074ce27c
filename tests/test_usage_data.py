"""
Unit tests for report pipeline orchestration.

Tests option validation, source failure handling, the pricing gate and
diagnostics, with every collaborator injected.
"""

import logging

import pytest

from llm_usage_metrics.config.loader import PricingConfig, ReportConfig
from llm_usage_metrics.config.runtime_overrides import (
    EnvVarOverride,
    ParsingRuntimeConfig,
    PricingRuntimeConfig,
)
from llm_usage_metrics.core.aggregation import RowType
from llm_usage_metrics.core.errors import (
    InputValidationError,
    OfflinePricingUnavailableError,
    PricingLoadError,
    SourceParseError,
)
from llm_usage_metrics.core.events import CostMode, create_usage_event
from llm_usage_metrics.core.pricing import ModelPricing, StaticPricingSource
from llm_usage_metrics.core.time_buckets import ReportGranularity
from llm_usage_metrics.core.usage_data import (
    BuildUsageDataDeps,
    PricingLoadResult,
    ReportOptions,
    SourceSessionStats,
    UsageDiagnostics,
    build_usage_data,
    emit_diagnostics,
    normalize_report_inputs,
    resolve_pricing_source,
    should_load_pricing_source,
)
from llm_usage_metrics.ingest.scheduler import SourceFailure
from llm_usage_metrics.ingest.source_adapter import ParseFileResult, SkippedRowReason
from llm_usage_metrics.pricing.loader import PricingOrigin

PRICING_RUNTIME = PricingRuntimeConfig(
    cache_ttl_ms=60_000, fetch_timeout_ms=200, max_attempts=1, retry_base_delay_ms=0
)

GPT_PRICING = StaticPricingSource({"gpt-4.1": ModelPricing(input_per_1m_usd=2.0, output_per_1m_usd=8.0)})


class StubAdapter:
    """Adapter with one in-memory file per entry of ``events_by_file``."""

    def __init__(self, source_id, events_by_file=None, error=None):
        self.id = source_id
        self.events_by_file = events_by_file or {}
        self.error = error

    async def discover_files(self):
        return list(self.events_by_file)

    async def parse_file(self, file_path):
        if self.error is not None:
            raise self.error
        return self.events_by_file[file_path]


def _event(source, model="gpt-4.1", timestamp="2026-03-10T12:00:00Z", **kwargs):
    fields = dict(input_tokens=1_000_000, output_tokens=0)
    fields.update(kwargs)
    return create_usage_event(
        source=source, session_id="s1", timestamp=timestamp, model=model, **fields
    )


class PricingStub:
    """Records calls and returns or raises a fixed outcome."""

    def __init__(self, outcome=None):
        self.outcome = outcome or PricingLoadResult(source=GPT_PRICING, origin=PricingOrigin.NETWORK)
        self.calls = 0

    async def __call__(self, inputs, runtime_config):
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _deps(adapters, pricing=None, overrides=None):
    created = []

    def create_adapters(config, source_dir_overrides):
        created.append(dict(source_dir_overrides))
        return adapters

    deps = BuildUsageDataDeps(
        create_adapters=create_adapters,
        resolve_pricing_source=pricing or PricingStub(),
        get_parsing_runtime_config=lambda: ParsingRuntimeConfig(max_parallel_file_parsing=2),
        get_pricing_runtime_config=lambda: PRICING_RUNTIME,
        get_active_env_var_overrides=lambda: list(overrides or []),
    )
    return deps, created


class TestNormalizeReportInputs:
    """Test option validation and config fallbacks."""

    def test_invalid_options_fail_before_io(self):
        with pytest.raises(InputValidationError, match="--since must use format"):
            normalize_report_inputs(ReportOptions(since="03/10/2026", timezone="UTC"))

    def test_invalid_timezone(self):
        with pytest.raises(InputValidationError, match="Invalid timezone"):
            normalize_report_inputs(ReportOptions(timezone="Mars/Olympus"))

    def test_explicit_sources_include_dir_overrides(self):
        inputs = normalize_report_inputs(ReportOptions(
            timezone="UTC", source=["Pi"], source_dirs=["codex=/tmp/codex"]
        ))
        assert inputs.explicit_source_ids == frozenset({"pi", "codex"})
        assert inputs.source_dir_overrides == {"codex": "/tmp/codex"}

    def test_config_fallbacks(self):
        config = ReportConfig(
            timezone="Europe/Paris",
            pricing=PricingConfig(url="https://prices.example.com/p.json", offline=True),
        )
        inputs = normalize_report_inputs(ReportOptions(config=config))

        assert inputs.timezone_name == "Europe/Paris"
        assert inputs.pricing_url == "https://prices.example.com/p.json"
        assert inputs.pricing_offline is True

    def test_command_line_wins_over_config(self):
        inputs = normalize_report_inputs(ReportOptions(
            timezone="UTC", config=ReportConfig(timezone="Europe/Paris")
        ))
        assert inputs.timezone_name == "UTC"


class TestBuildUsageData:
    """Test the end-to-end pipeline with injected collaborators."""

    @pytest.mark.asyncio
    async def test_prices_and_aggregates(self):
        adapters = [
            StubAdapter("pi", {"p1": [_event("pi")]}),
            StubAdapter("codex", {"c1": [_event("codex"), _event("codex", model="mystery")]}),
        ]
        deps, _ = _deps(adapters)

        result = await build_usage_data(ReportGranularity.DAILY, ReportOptions(timezone="UTC"), deps)

        assert [event.cost_usd for event in result.events] == [2.0, 2.0, None]
        assert [(row.row_type, row.source) for row in result.rows] == [
            (RowType.PERIOD_SOURCE, "codex"),
            (RowType.PERIOD_SOURCE, "pi"),
            (RowType.PERIOD_COMBINED, "combined"),
            (RowType.GRAND_TOTAL, "combined"),
        ]
        grand_total = result.rows[-1].totals
        assert grand_total.cost_usd == 4.0
        assert grand_total.cost_incomplete is True
        assert result.diagnostics.pricing_origin == PricingOrigin.NETWORK
        assert result.diagnostics.session_stats == [
            SourceSessionStats(source="pi", files_found=1, events_parsed=1),
            SourceSessionStats(source="codex", files_found=1, events_parsed=2),
        ]

    @pytest.mark.asyncio
    async def test_unknown_source_filter(self):
        deps, _ = _deps([StubAdapter("pi")])
        with pytest.raises(InputValidationError, match="Unknown --source value"):
            await build_usage_data(
                ReportGranularity.DAILY, ReportOptions(timezone="UTC", source=["codex"]), deps
            )

    @pytest.mark.asyncio
    async def test_source_filter_limits_parsing(self):
        adapters = [
            StubAdapter("pi", {"p1": [_event("pi")]}),
            StubAdapter("codex", {"c1": [_event("codex")]}),
        ]
        deps, _ = _deps(adapters)

        result = await build_usage_data(
            ReportGranularity.DAILY, ReportOptions(timezone="UTC", source=["codex"]), deps
        )

        assert {event.source for event in result.events} == {"codex"}
        assert [stats.source for stats in result.diagnostics.session_stats] == ["codex"]

    @pytest.mark.asyncio
    async def test_explicit_source_failure_is_fatal(self):
        adapters = [
            StubAdapter("pi", {"p1": [_event("pi")]}),
            StubAdapter("codex", {"c1": []}, error=OSError("disk error")),
        ]
        deps, _ = _deps(adapters)

        with pytest.raises(SourceParseError, match="codex: disk error"):
            await build_usage_data(
                ReportGranularity.DAILY, ReportOptions(timezone="UTC", source=["pi,codex"]), deps
            )

    @pytest.mark.asyncio
    async def test_implicit_source_failure_is_reported(self):
        adapters = [
            StubAdapter("pi", {"p1": [_event("pi")]}),
            StubAdapter("codex", {"c1": []}, error=OSError("disk error")),
        ]
        deps, _ = _deps(adapters)

        result = await build_usage_data(ReportGranularity.DAILY, ReportOptions(timezone="UTC"), deps)

        assert result.diagnostics.source_failures == [SourceFailure("codex", "disk error")]
        assert result.diagnostics.session_stats[1] == SourceSessionStats("codex", 0, 0)
        assert len(result.events) == 1

    @pytest.mark.asyncio
    async def test_dir_overrides_reach_adapter_factory(self):
        deps, created = _deps([StubAdapter("codex", {"c1": [_event("codex")]})])

        await build_usage_data(
            ReportGranularity.DAILY,
            ReportOptions(timezone="UTC", source_dirs=["codex=/data/codex"]),
            deps,
        )

        assert created == [{"codex": "/data/codex"}]

    @pytest.mark.asyncio
    async def test_skipped_rows_in_diagnostics(self):
        parse_result = ParseFileResult(
            events=[_event("pi")],
            skipped_rows=2,
            skipped_row_reasons=[SkippedRowReason("invalid_json", 2)],
        )
        deps, _ = _deps([StubAdapter("pi", {"p1": parse_result})])

        result = await build_usage_data(ReportGranularity.DAILY, ReportOptions(timezone="UTC"), deps)

        skipped = result.diagnostics.skipped_rows
        assert len(skipped) == 1
        assert skipped[0].skipped_rows == 2
        assert skipped[0].reasons == [SkippedRowReason("invalid_json", 2)]

    @pytest.mark.asyncio
    async def test_filters_apply_before_pricing(self):
        adapters = [StubAdapter("pi", {"p1": [
            _event("pi", timestamp="2026-03-09T12:00:00Z"),
            _event("pi", timestamp="2026-03-10T12:00:00Z"),
        ]})]
        deps, _ = _deps(adapters)

        result = await build_usage_data(
            ReportGranularity.DAILY,
            ReportOptions(timezone="UTC", since="2026-03-10"),
            deps,
        )

        assert len(result.events) == 1
        assert result.rows[0].period_key == "2026-03-10"


class TestPricingGate:
    """Test when pricing is loaded and how failures are handled."""

    @pytest.mark.asyncio
    async def test_explicit_costs_skip_pricing(self):
        event = _event("pi", cost_usd=0.5, cost_mode="explicit")
        pricing = PricingStub()
        deps, _ = _deps([StubAdapter("pi", {"p1": [event]})], pricing=pricing)

        result = await build_usage_data(ReportGranularity.DAILY, ReportOptions(timezone="UTC"), deps)

        assert pricing.calls == 0
        assert result.diagnostics.pricing_origin == PricingOrigin.NONE
        assert result.events[0].cost_usd == 0.5

    @pytest.mark.asyncio
    async def test_zero_explicit_cost_is_repriced(self):
        event = _event("pi", cost_usd=0, cost_mode="explicit")
        pricing = PricingStub()
        deps, _ = _deps([StubAdapter("pi", {"p1": [event]})], pricing=pricing)

        await build_usage_data(ReportGranularity.DAILY, ReportOptions(timezone="UTC"), deps)

        assert pricing.calls == 1

    def test_offline_or_custom_url_always_loads(self):
        offline = normalize_report_inputs(ReportOptions(timezone="UTC", pricing_offline=True))
        custom = normalize_report_inputs(ReportOptions(timezone="UTC", pricing_url="https://p.example.com"))
        default = normalize_report_inputs(ReportOptions(timezone="UTC"))

        assert should_load_pricing_source([], offline)
        assert should_load_pricing_source([], custom)
        assert not should_load_pricing_source([], default)

    @pytest.mark.asyncio
    async def test_pricing_failure_is_fatal_by_default(self):
        pricing = PricingStub(PricingLoadError("Could not load LiteLLM pricing: boom"))
        deps, _ = _deps([StubAdapter("pi", {"p1": [_event("pi")]})], pricing=pricing)

        with pytest.raises(PricingLoadError, match="boom"):
            await build_usage_data(ReportGranularity.DAILY, ReportOptions(timezone="UTC"), deps)

    @pytest.mark.asyncio
    async def test_ignored_pricing_failure_warns(self):
        pricing = PricingStub(PricingLoadError("connection reset"))
        deps, _ = _deps([StubAdapter("pi", {"p1": [_event("pi")]})], pricing=pricing)

        result = await build_usage_data(
            ReportGranularity.DAILY,
            ReportOptions(timezone="UTC", ignore_pricing_failures=True),
            deps,
        )

        assert result.diagnostics.pricing_warning == (
            "Could not load pricing; continuing without estimated costs: connection reset"
        )
        assert result.events[0].cost_usd is None
        assert result.events[0].cost_mode == CostMode.ESTIMATED

    @pytest.mark.asyncio
    async def test_ignored_failure_keeps_descriptive_message(self):
        pricing = PricingStub(PricingLoadError("Could not load LiteLLM pricing: boom"))
        deps, _ = _deps([StubAdapter("pi", {"p1": [_event("pi")]})], pricing=pricing)

        result = await build_usage_data(
            ReportGranularity.DAILY,
            ReportOptions(timezone="UTC", ignore_pricing_failures=True),
            deps,
        )

        assert result.diagnostics.pricing_warning == "Could not load LiteLLM pricing: boom"

    @pytest.mark.asyncio
    async def test_offline_without_cache_is_always_fatal(self):
        pricing = PricingStub(OfflinePricingUnavailableError("no cache"))
        deps, _ = _deps([StubAdapter("pi", {"p1": [_event("pi")]})], pricing=pricing)

        with pytest.raises(OfflinePricingUnavailableError):
            await build_usage_data(
                ReportGranularity.DAILY,
                ReportOptions(timezone="UTC", pricing_offline=True, ignore_pricing_failures=True),
                deps,
            )

    @pytest.mark.asyncio
    async def test_resolve_offline_without_cache(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
        inputs = normalize_report_inputs(ReportOptions(timezone="UTC", pricing_offline=True))

        with pytest.raises(OfflinePricingUnavailableError, match="cached pricing is unavailable"):
            await resolve_pricing_source(inputs, PRICING_RUNTIME)


class TestEmitDiagnostics:
    """Test the logged run summary."""

    def _diagnostics(self, **overrides):
        fields = dict(
            session_stats=[
                SourceSessionStats("pi", 2, 1),
                SourceSessionStats("codex", 1, 5),
            ],
            source_failures=[],
            skipped_rows=[],
            pricing_origin=PricingOrigin.CACHE,
            active_env_overrides=[],
            timezone="UTC",
        )
        fields.update(overrides)
        return UsageDiagnostics(**fields)

    def test_summary_lines(self, caplog):
        diagnostics_logger = logging.getLogger("tests.diagnostics")
        caplog.set_level(logging.INFO, logger="tests.diagnostics")

        emit_diagnostics(
            self._diagnostics(
                source_failures=[SourceFailure("opencode", "locked")],
                active_env_overrides=[EnvVarOverride("LLM_USAGE_PARSE_MAX_PARALLEL", "4", "max parallel file parsing")],
            ),
            diagnostics_logger,
        )

        messages = [record.getMessage() for record in caplog.records]
        assert messages[0] == "Found 3 session file(s) with 6 event(s)"
        assert "  pi: 2 file(s), 1 event" in messages
        assert "  codex: 1 file(s), 5 events" in messages
        assert "Failed to parse source opencode: locked" in messages
        assert "  LLM_USAGE_PARSE_MAX_PARALLEL=4  (max parallel file parsing)" in messages
        assert messages[-1] == "Loaded pricing from cache"

    def test_no_sessions_warning(self, caplog):
        diagnostics_logger = logging.getLogger("tests.diagnostics")
        caplog.set_level(logging.INFO, logger="tests.diagnostics")

        emit_diagnostics(
            self._diagnostics(session_stats=[], pricing_origin=PricingOrigin.OFFLINE_CACHE),
            diagnostics_logger,
        )

        warnings = [record for record in caplog.records if record.levelno == logging.WARNING]
        assert [record.getMessage() for record in warnings] == ["No sessions found"]
        assert caplog.records[-1].getMessage() == "Using cached pricing (offline mode)"
