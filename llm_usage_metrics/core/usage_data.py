"""
Report pipeline orchestration.

Runs one report end to end:
1. Validate and normalize every caller option (no I/O yet)
2. Parse the selected sources concurrently
3. Filter the combined events
4. Load pricing when some event needs it, then price events
5. Aggregate into report rows and collect diagnostics
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple
from zoneinfo import ZoneInfo

from llm_usage_metrics.config.loader import ReportConfig
from llm_usage_metrics.config.runtime_overrides import (
    EnvVarOverride,
    ParsingRuntimeConfig,
    PricingRuntimeConfig,
    get_active_env_var_overrides,
    get_parsing_runtime_config,
    get_pricing_runtime_config,
)
from llm_usage_metrics.ingest.factory import create_adapters
from llm_usage_metrics.ingest.scheduler import (
    AdapterParseResult,
    SourceFailure,
    parse_selected_adapters,
    raise_on_explicit_source_failures,
)
from llm_usage_metrics.ingest.source_adapter import SkippedRowReason, SourceAdapter
from llm_usage_metrics.pricing.loader import (
    PricingOrigin,
    RateTableLoader,
    is_retryable_fetch_error,
)
from llm_usage_metrics.pricing.rate_table import DEFAULT_RATE_TABLE_URL

from .aggregation import UsageReportRow, aggregate_usage
from .errors import OfflinePricingUnavailableError, PricingLoadError
from .events import CostMode, UsageEvent
from .filters import (
    EventFilterOptions,
    filter_usage_events,
    normalize_model_filter,
    normalize_provider_filter,
    normalize_source_filter,
    parse_source_dir_overrides,
    validate_date_range,
    validate_pricing_url,
    validate_source_filter_values,
)
from .pricing import PricingSource, apply_pricing_to_events
from .retry import RetryPolicy
from .time_buckets import ReportGranularity, detect_default_timezone, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportOptions:
    """Caller-supplied report options, as given on the command line.

    Options left unset fall back to ``config``.
    """
    since: Optional[str] = None
    until: Optional[str] = None
    timezone: Optional[str] = None
    provider: Optional[str] = None
    source: Optional[List[str]] = None
    model: Optional[List[str]] = None
    source_dirs: Optional[List[str]] = None
    pricing_url: Optional[str] = None
    pricing_offline: bool = False
    ignore_pricing_failures: bool = False
    config: ReportConfig = field(default_factory=ReportConfig)


@dataclass(frozen=True)
class NormalizedReportInputs:
    """Validated options for one run."""
    timezone_name: str
    timezone: ZoneInfo
    since: Optional[str]
    until: Optional[str]
    provider_filter: Optional[str]
    source_filter: Optional[Set[str]]
    model_filter: Optional[List[str]]
    explicit_source_ids: FrozenSet[str]
    source_dir_overrides: Dict[str, str]
    pricing_url: Optional[str]
    pricing_offline: bool
    ignore_pricing_failures: bool
    source_order: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PricingLoadResult:
    source: PricingSource
    origin: PricingOrigin


@dataclass(frozen=True)
class PricingApplication:
    """Priced events plus how pricing was obtained."""
    priced_events: List[UsageEvent]
    pricing_origin: PricingOrigin
    pricing_warning: Optional[str] = None


@dataclass(frozen=True)
class SourceSessionStats:
    source: str
    files_found: int
    events_parsed: int


@dataclass(frozen=True)
class SourceSkippedRows:
    source: str
    skipped_rows: int
    reasons: List[SkippedRowReason]


@dataclass(frozen=True)
class UsageDiagnostics:
    """Run facts surfaced to the user next to the report."""
    session_stats: List[SourceSessionStats]
    source_failures: List[SourceFailure]
    skipped_rows: List[SourceSkippedRows]
    pricing_origin: PricingOrigin
    active_env_overrides: List[EnvVarOverride]
    timezone: str
    pricing_warning: Optional[str] = None


@dataclass(frozen=True)
class UsageDataResult:
    events: List[UsageEvent]
    rows: List[UsageReportRow]
    diagnostics: UsageDiagnostics


PricingSourceResolver = Callable[
    [NormalizedReportInputs, PricingRuntimeConfig], Awaitable[PricingLoadResult]
]


def normalize_report_inputs(options: ReportOptions) -> NormalizedReportInputs:
    """Validate every option before any I/O happens.

    Raises:
        InputValidationError: Naming the first offending option
    """
    validate_date_range(options.since, options.until)
    pricing_url = validate_pricing_url(
        options.pricing_url if options.pricing_url is not None else options.config.pricing.url
    )

    timezone_name = (options.timezone or options.config.timezone or "").strip()
    if options.timezone is None and not timezone_name:
        timezone_name = detect_default_timezone()
    timezone = resolve_timezone(timezone_name)

    source_filter = normalize_source_filter(options.source)
    source_dir_overrides = parse_source_dir_overrides(options.source_dirs)
    explicit_source_ids = set(source_filter or ())
    explicit_source_ids.update(source_dir_overrides.keys())

    return NormalizedReportInputs(
        timezone_name=timezone_name,
        timezone=timezone,
        since=options.since,
        until=options.until,
        provider_filter=normalize_provider_filter(options.provider),
        source_filter=source_filter,
        model_filter=normalize_model_filter(options.model),
        explicit_source_ids=frozenset(explicit_source_ids),
        source_dir_overrides=source_dir_overrides,
        pricing_url=pricing_url,
        pricing_offline=options.pricing_offline or options.config.pricing.offline,
        ignore_pricing_failures=(
            options.ignore_pricing_failures or options.config.pricing.ignore_failures
        ),
        source_order=options.config.source_order,
    )


def select_adapters_for_parsing(
    adapters: List[SourceAdapter],
    source_filter: Optional[Set[str]],
) -> List[SourceAdapter]:
    """Validate the source filter and keep the matching adapters in order."""
    validate_source_filter_values(source_filter, [adapter.id for adapter in adapters])
    if not source_filter:
        return list(adapters)
    return [adapter for adapter in adapters if adapter.id.lower() in source_filter]


def event_needs_pricing_lookup(event: UsageEvent) -> bool:
    if not event.model:
        return False
    return (
        event.cost_mode != CostMode.EXPLICIT
        or event.cost_usd is None
        or event.cost_usd == 0
    )


def should_load_pricing_source(events: List[UsageEvent], inputs: NormalizedReportInputs) -> bool:
    """Whether this run has to touch the pricing cache or network at all."""
    if inputs.pricing_offline or inputs.pricing_url:
        return True
    return any(event_needs_pricing_lookup(event) for event in events)


async def resolve_pricing_source(
    inputs: NormalizedReportInputs,
    runtime_config: PricingRuntimeConfig,
) -> PricingLoadResult:
    """Load the rate table for a run.

    Raises:
        OfflinePricingUnavailableError: Offline mode without a cached table
        PricingLoadError: With a message naming the pricing URL in use
    """
    loader = RateTableLoader(
        source_url=inputs.pricing_url or DEFAULT_RATE_TABLE_URL,
        cache_ttl_ms=runtime_config.cache_ttl_ms,
        fetch_timeout_ms=runtime_config.fetch_timeout_ms,
        offline=inputs.pricing_offline,
        retry_policy=RetryPolicy(
            max_attempts=runtime_config.max_attempts,
            base_delay=runtime_config.retry_base_delay_ms / 1000,
            is_retryable=is_retryable_fetch_error,
        ),
    )

    try:
        async with loader:
            origin = await loader.load()
    except PricingLoadError as exc:
        if inputs.pricing_offline:
            raise OfflinePricingUnavailableError(
                "Offline pricing mode enabled but cached pricing is unavailable"
            ) from exc
        if inputs.pricing_url:
            raise PricingLoadError(f"Could not load pricing from --pricing-url: {exc}") from exc
        raise PricingLoadError(f"Could not load LiteLLM pricing: {exc}") from exc

    return PricingLoadResult(source=loader, origin=origin)


async def resolve_and_apply_pricing(
    events: List[UsageEvent],
    inputs: NormalizedReportInputs,
    runtime_config: PricingRuntimeConfig,
    load_pricing_source: PricingSourceResolver = resolve_pricing_source,
) -> PricingApplication:
    """Price events, honouring ``ignore_pricing_failures``.

    When pricing cannot be loaded and failures are ignored, events are
    returned unchanged with a warning. Offline mode without a cache is
    always fatal.
    """
    if not should_load_pricing_source(events, inputs):
        return PricingApplication(priced_events=list(events), pricing_origin=PricingOrigin.NONE)

    try:
        pricing_result = await load_pricing_source(inputs, runtime_config)
    except PricingLoadError as exc:
        if not inputs.ignore_pricing_failures or isinstance(exc, OfflinePricingUnavailableError):
            raise

        reason = str(exc).strip()
        if reason.startswith("Could not load"):
            warning = reason
        else:
            warning = f"Could not load pricing; continuing without estimated costs: {reason}"
        return PricingApplication(
            priced_events=list(events),
            pricing_origin=PricingOrigin.NONE,
            pricing_warning=warning,
        )

    return PricingApplication(
        priced_events=apply_pricing_to_events(events, pricing_result.source),
        pricing_origin=pricing_result.origin,
    )


@dataclass
class BuildUsageDataDeps:
    """Injectable collaborators of ``build_usage_data``."""
    create_adapters: Callable[[ReportConfig, Mapping[str, str]], List[SourceAdapter]] = create_adapters
    resolve_pricing_source: PricingSourceResolver = resolve_pricing_source
    get_parsing_runtime_config: Callable[[], ParsingRuntimeConfig] = get_parsing_runtime_config
    get_pricing_runtime_config: Callable[[], PricingRuntimeConfig] = get_pricing_runtime_config
    get_active_env_var_overrides: Callable[[], List[EnvVarOverride]] = get_active_env_var_overrides


def build_usage_diagnostics(
    adapters_to_parse: List[SourceAdapter],
    successful_results: List[AdapterParseResult],
    source_failures: List[SourceFailure],
    pricing: PricingApplication,
    active_env_overrides: List[EnvVarOverride],
    timezone_name: str,
) -> UsageDiagnostics:
    result_by_source = {result.source.lower(): result for result in successful_results}

    session_stats = []
    for adapter in adapters_to_parse:
        result = result_by_source.get(adapter.id.lower())
        session_stats.append(SourceSessionStats(
            source=adapter.id,
            files_found=result.files_found if result else 0,
            events_parsed=len(result.events) if result else 0,
        ))

    return UsageDiagnostics(
        session_stats=session_stats,
        source_failures=list(source_failures),
        skipped_rows=[
            SourceSkippedRows(
                source=result.source,
                skipped_rows=result.skipped_rows,
                reasons=list(result.skipped_row_reasons),
            )
            for result in successful_results
            if result.skipped_rows > 0
        ],
        pricing_origin=pricing.pricing_origin,
        active_env_overrides=list(active_env_overrides),
        timezone=timezone_name,
        pricing_warning=pricing.pricing_warning,
    )


async def build_usage_data(
    granularity: ReportGranularity,
    options: ReportOptions,
    deps: Optional[BuildUsageDataDeps] = None,
) -> UsageDataResult:
    """Run the full report pipeline.

    Args:
        granularity: Report period size
        options: Caller options
        deps: Collaborator overrides, mainly for tests

    Returns:
        Filtered priced events, report rows and diagnostics

    Raises:
        InputValidationError: If an option is invalid
        SourceParseError: If an explicitly requested source failed
        PricingLoadError: If pricing is required but could not be loaded
    """
    deps = deps or BuildUsageDataDeps()
    inputs = normalize_report_inputs(options)

    parsing_config = deps.get_parsing_runtime_config()
    pricing_config = deps.get_pricing_runtime_config()

    adapters = deps.create_adapters(options.config, inputs.source_dir_overrides)
    adapters_to_parse = select_adapters_for_parsing(adapters, inputs.source_filter)

    parsed = await parse_selected_adapters(adapters_to_parse, parsing_config.max_parallel_file_parsing)
    raise_on_explicit_source_failures(parsed.source_failures, inputs.explicit_source_ids)

    filtered_events = filter_usage_events(
        [event for result in parsed.successful_results for event in result.events],
        EventFilterOptions(
            timezone=inputs.timezone,
            since=inputs.since,
            until=inputs.until,
            provider_filter=inputs.provider_filter,
            model_filter=inputs.model_filter,
        ),
    )

    pricing = await resolve_and_apply_pricing(
        filtered_events, inputs, pricing_config, deps.resolve_pricing_source
    )

    rows = aggregate_usage(
        pricing.priced_events, granularity, inputs.timezone, inputs.source_order
    )

    diagnostics = build_usage_diagnostics(
        adapters_to_parse,
        parsed.successful_results,
        parsed.source_failures,
        pricing,
        deps.get_active_env_var_overrides(),
        inputs.timezone_name,
    )

    return UsageDataResult(events=pricing.priced_events, rows=rows, diagnostics=diagnostics)


def emit_diagnostics(diagnostics: UsageDiagnostics, diagnostics_logger: logging.Logger = logger) -> None:
    """Log the human-readable run summary."""
    total_files = sum(stats.files_found for stats in diagnostics.session_stats)
    total_events = sum(stats.events_parsed for stats in diagnostics.session_stats)

    if total_files > 0:
        diagnostics_logger.info(
            "Found %d session file(s) with %d event(s)", total_files, total_events
        )
        for stats in diagnostics.session_stats:
            events_label = "event" if stats.events_parsed == 1 else "events"
            diagnostics_logger.info(
                "  %s: %d file(s), %d %s",
                stats.source, stats.files_found, stats.events_parsed, events_label,
            )
    else:
        diagnostics_logger.warning("No sessions found")

    for failure in diagnostics.source_failures:
        diagnostics_logger.warning("Failed to parse source %s: %s", failure.source, failure.reason)

    for skipped in diagnostics.skipped_rows:
        reasons = ", ".join(f"{reason.reason}: {reason.count}" for reason in skipped.reasons)
        diagnostics_logger.warning(
            "  %s: skipped %d malformed row(s)%s",
            skipped.source, skipped.skipped_rows, f" ({reasons})" if reasons else "",
        )

    if diagnostics.active_env_overrides:
        diagnostics_logger.info("Active environment overrides:")
        for override in diagnostics.active_env_overrides:
            diagnostics_logger.info("  %s=%s  (%s)", override.name, override.value, override.description)

    if diagnostics.pricing_warning:
        diagnostics_logger.warning(diagnostics.pricing_warning)

    if diagnostics.pricing_origin == PricingOrigin.OFFLINE_CACHE:
        diagnostics_logger.info("Using cached pricing (offline mode)")
    elif diagnostics.pricing_origin == PricingOrigin.CACHE:
        diagnostics_logger.info("Loaded pricing from cache")
    elif diagnostics.pricing_origin == PricingOrigin.NETWORK:
        diagnostics_logger.info("Fetched pricing from LiteLLM")
