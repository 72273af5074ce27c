"""
Hierarchical aggregation of priced usage events into report rows.

Rows are emitted per period in ascending key order: one row per contributing
source, a combined row when more than one source contributed, and a single
trailing grand total.
"""

from dataclasses import asdict, dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from .events import UsageEvent, normalize_model_list
from .time_buckets import ReportGranularity, get_period_key

USD_QUANTUM = Decimal("1e-12")

GRAND_TOTAL_PERIOD_KEY = "ALL"
COMBINED_SOURCE_LABEL = "combined"


def add_usd(left: float, right: float) -> float:
    """Add two USD amounts, rounding the sum to 1e-12.

    The sum is taken over the exact decimal values of both floats so that
    binary drift does not accumulate across many additions.
    """
    total = Decimal(left) + Decimal(right)
    return float(total.quantize(USD_QUANTUM, rounding=ROUND_HALF_EVEN))


class RowType(Enum):
    """Report row variants."""
    PERIOD_SOURCE = "period_source"
    PERIOD_COMBINED = "period_combined"
    GRAND_TOTAL = "grand_total"


@dataclass
class UsageTotals:
    """Token and cost accumulator.

    ``cost_usd`` holds the sum of known costs only; ``cost_incomplete``
    records that at least one contribution had no cost.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    total_tokens: int = 0
    cost_usd: Optional[float] = None
    cost_incomplete: bool = False

    def add_event(self, event: UsageEvent) -> None:
        self.input_tokens += event.input_tokens
        self.output_tokens += event.output_tokens
        self.reasoning_tokens += event.reasoning_tokens
        self.cache_read_tokens += event.cache_read_tokens
        self.cache_write_tokens += event.cache_write_tokens
        self.total_tokens += event.total_tokens

        if event.cost_usd is None:
            self.cost_incomplete = True
            return

        self.cost_usd = add_usd(self.cost_usd or 0.0, event.cost_usd)

    def add_totals(self, other: "UsageTotals") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.reasoning_tokens += other.reasoning_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_write_tokens += other.cache_write_tokens
        self.total_tokens += other.total_tokens

        if other.cost_usd is not None:
            self.cost_usd = add_usd(self.cost_usd or 0.0, other.cost_usd)
        if other.cost_incomplete:
            self.cost_incomplete = True


@dataclass(frozen=True)
class ModelUsageBreakdown:
    model: str
    totals: UsageTotals


@dataclass(frozen=True)
class UsageReportRow:
    """One rendered line of a usage report."""
    row_type: RowType
    period_key: str
    source: str
    totals: UsageTotals
    models: List[str] = field(default_factory=list)
    model_breakdown: List[ModelUsageBreakdown] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data view for JSON output."""
        return {
            "row_type": self.row_type.value,
            "period_key": self.period_key,
            "source": self.source,
            **asdict(self.totals),
            "models": list(self.models),
            "model_breakdown": [
                {"model": entry.model, **asdict(entry.totals)} for entry in self.model_breakdown
            ],
        }


@dataclass
class _RowAccumulator:
    totals: UsageTotals = field(default_factory=UsageTotals)
    model_totals: Dict[str, UsageTotals] = field(default_factory=dict)

    def add_event(self, event: UsageEvent) -> None:
        self.totals.add_event(event)

        model_key = _normalize_model_key(event.model)
        if model_key is None:
            return
        self.model_totals.setdefault(model_key, UsageTotals()).add_event(event)


def _normalize_model_key(model: Optional[str]) -> Optional[str]:
    if not model:
        return None
    normalized = model.strip().lower()
    return normalized or None


def _merge_model_totals(target: Dict[str, UsageTotals], source: Dict[str, UsageTotals]) -> None:
    for model, totals in source.items():
        target.setdefault(model, UsageTotals()).add_totals(totals)


def _to_model_breakdown(model_totals: Dict[str, UsageTotals]) -> List[ModelUsageBreakdown]:
    return [
        ModelUsageBreakdown(model=model, totals=model_totals[model])
        for model in normalize_model_list(model_totals.keys())
    ]


def _build_row(
    row_type: RowType,
    period_key: str,
    source: str,
    totals: UsageTotals,
    model_totals: Dict[str, UsageTotals],
) -> UsageReportRow:
    return UsageReportRow(
        row_type=row_type,
        period_key=period_key,
        source=source,
        totals=totals,
        models=normalize_model_list(model_totals.keys()),
        model_breakdown=_to_model_breakdown(model_totals),
    )


def _sort_sources(sources: Iterable[str], source_order: Sequence[str]) -> List[str]:
    weights = {}
    for index, source in enumerate(source_order):
        weights.setdefault(source, index)
    unranked = len(weights)
    return sorted(sources, key=lambda source: (weights.get(source, unranked), source))


def aggregate_usage(
    events: List[UsageEvent],
    granularity: ReportGranularity,
    timezone: ZoneInfo,
    source_order: Optional[Sequence[str]] = None,
) -> List[UsageReportRow]:
    """Build the ordered report-row set for a list of priced events.

    Args:
        events: Priced (or explicitly costed) usage events
        granularity: Period size used for grouping
        timezone: Timezone in which periods are computed
        source_order: Preferred source ordering within a period; sources
            not listed follow in code-point order

    Returns:
        period_source rows, period_combined rows for multi-source periods,
        and exactly one trailing grand_total row
    """
    period_map: Dict[str, Dict[str, _RowAccumulator]] = {}

    for event in events:
        period_key = get_period_key(event.timestamp, granularity, timezone)
        period_sources = period_map.setdefault(period_key, {})
        period_sources.setdefault(event.source, _RowAccumulator()).add_event(event)

    rows: List[UsageReportRow] = []
    grand_totals = UsageTotals()
    grand_model_totals: Dict[str, UsageTotals] = {}

    for period_key in sorted(period_map):
        source_map = period_map[period_key]
        combined_totals = UsageTotals()
        combined_model_totals: Dict[str, UsageTotals] = {}

        sorted_sources = _sort_sources(source_map.keys(), source_order or [])
        for source in sorted_sources:
            accumulator = source_map[source]
            rows.append(_build_row(
                RowType.PERIOD_SOURCE, period_key, source, accumulator.totals, accumulator.model_totals
            ))

            combined_totals.add_totals(accumulator.totals)
            grand_totals.add_totals(accumulator.totals)
            _merge_model_totals(combined_model_totals, accumulator.model_totals)
            _merge_model_totals(grand_model_totals, accumulator.model_totals)

        if len(sorted_sources) > 1:
            rows.append(_build_row(
                RowType.PERIOD_COMBINED, period_key, COMBINED_SOURCE_LABEL,
                combined_totals, combined_model_totals
            ))

    # An empty report still totals to an explicit zero cost
    if not events and grand_totals.cost_usd is None and not grand_totals.cost_incomplete:
        grand_totals.cost_usd = 0.0

    rows.append(_build_row(
        RowType.GRAND_TOTAL, GRAND_TOTAL_PERIOD_KEY, COMBINED_SOURCE_LABEL,
        grand_totals, grand_model_totals
    ))
    return rows
