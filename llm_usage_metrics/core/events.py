"""
Usage event model and normalization.

Defines the immutable record every source adapter produces and the helpers
that coerce raw adapter values into it.
"""

import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Union

NumberLike = Union[int, float, str, None]


class CostMode(Enum):
    """How an event's cost was obtained."""
    EXPLICIT = "explicit"    # Reported by the source itself
    ESTIMATED = "estimated"  # Derived (or not derivable) from a rate table


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of token usage emitted by one agent session.

    ``total_tokens`` is whatever the source declared and need not equal the
    sum of the other counters.
    """
    source: str
    session_id: str
    timestamp: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    total_tokens: int = 0
    cost_mode: CostMode = CostMode.ESTIMATED
    cost_usd: Optional[float] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    repo_root: Optional[str] = None

    def with_pricing(self, cost_usd: Optional[float], cost_mode: CostMode) -> "UsageEvent":
        """Return a copy carrying a new cost and cost mode."""
        return replace(self, cost_usd=cost_usd, cost_mode=cost_mode)


def _to_float(value: NumberLike) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            parsed = float(value)
        except ValueError:
            return None
    else:
        try:
            parsed = float(value)
        except OverflowError:
            raise ValueError("Numeric value is out of range")
    if not math.isfinite(parsed):
        return None
    return parsed


def normalize_non_negative_int(value: NumberLike) -> int:
    """Coerce a raw counter into a non-negative integer.

    Missing, non-numeric and non-finite values become 0; fractional values
    are truncated and negatives clamp to 0.

    Raises:
        ValueError: If an integer is too large to represent as a float
    """
    parsed = _to_float(value)
    if parsed is None:
        return 0
    return max(0, int(parsed))


def normalize_usd_cost(value: NumberLike) -> Optional[float]:
    """Coerce a raw cost into a non-negative USD amount, or None if absent."""
    parsed = _to_float(value)
    if parsed is None:
        return None
    return max(0.0, parsed)


def normalize_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime.

    Naive values are interpreted as UTC.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"Invalid timestamp: {value}")
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _optional_text(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = value.strip()
    return normalized or None


def _require_text(value: Optional[str], field_name: str) -> str:
    normalized = _optional_text(value)
    if normalized is None:
        raise ValueError(f"UsageEvent {field_name} must be a non-empty string")
    return normalized


def _resolve_cost_mode(cost_mode: Union[CostMode, str, None], cost_usd: Optional[float]) -> CostMode:
    if cost_mode is not None and not isinstance(cost_mode, CostMode):
        try:
            cost_mode = CostMode(str(cost_mode).strip().lower())
        except ValueError:
            valid_modes = [mode.value for mode in CostMode]
            raise ValueError(f"UsageEvent cost_mode must be one of: {valid_modes}")

    if cost_mode == CostMode.EXPLICIT and cost_usd is None:
        raise ValueError('UsageEvent with cost_mode "explicit" requires cost_usd')

    if cost_mode is not None:
        return cost_mode

    return CostMode.ESTIMATED if cost_usd is None else CostMode.EXPLICIT


def create_usage_event(
    source: str,
    session_id: str,
    timestamp: Union[str, datetime],
    input_tokens: NumberLike = None,
    output_tokens: NumberLike = None,
    reasoning_tokens: NumberLike = None,
    cache_read_tokens: NumberLike = None,
    cache_write_tokens: NumberLike = None,
    total_tokens: NumberLike = None,
    cost_usd: NumberLike = None,
    cost_mode: Union[CostMode, str, None] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    repo_root: Optional[str] = None,
) -> UsageEvent:
    """Build a normalized UsageEvent from loosely typed adapter values.

    Args:
        source: Source id of the emitting adapter
        session_id: Session identifier within that source
        timestamp: Event time as ISO-8601 text or datetime
        input_tokens: Raw input token count
        output_tokens: Raw output token count
        reasoning_tokens: Raw reasoning token count
        cache_read_tokens: Raw cache-read token count
        cache_write_tokens: Raw cache-write token count
        total_tokens: Declared total; derived from the components when 0
        cost_usd: Cost reported by the source, if any
        cost_mode: Explicit cost mode; inferred from cost_usd when omitted
        provider: Provider name reported by the source
        model: Model identifier (stored lower-cased)
        repo_root: Repository root hint

    Returns:
        Normalized UsageEvent

    Raises:
        ValueError: If source, session_id, timestamp or cost_mode is invalid,
            or a numeric value is out of range
    """
    normalized_input = normalize_non_negative_int(input_tokens)
    normalized_output = normalize_non_negative_int(output_tokens)
    normalized_reasoning = normalize_non_negative_int(reasoning_tokens)
    normalized_cache_read = normalize_non_negative_int(cache_read_tokens)
    normalized_cache_write = normalize_non_negative_int(cache_write_tokens)

    declared_total = normalize_non_negative_int(total_tokens)
    component_total = (
        normalized_input
        + normalized_output
        + normalized_reasoning
        + normalized_cache_read
        + normalized_cache_write
    )

    normalized_cost = normalize_usd_cost(cost_usd)
    normalized_model = _optional_text(model)

    return UsageEvent(
        source=_require_text(source, "source"),
        session_id=_require_text(session_id, "session_id"),
        timestamp=normalize_timestamp(timestamp),
        input_tokens=normalized_input,
        output_tokens=normalized_output,
        reasoning_tokens=normalized_reasoning,
        cache_read_tokens=normalized_cache_read,
        cache_write_tokens=normalized_cache_write,
        total_tokens=declared_total if declared_total > 0 else component_total,
        cost_mode=_resolve_cost_mode(cost_mode, normalized_cost),
        cost_usd=normalized_cost,
        provider=_optional_text(provider),
        model=normalized_model.lower() if normalized_model else None,
        repo_root=_optional_text(repo_root),
    )


def model_sort_key(model: str):
    """Stable, locale-style ordering: case-insensitive first, then raw text."""
    return (model.casefold(), model)


def normalize_model_list(models: Iterable[Optional[str]]) -> List[str]:
    """Deduplicate, trim and sort model names, dropping blanks."""
    deduplicated = set()
    for model in models:
        if not model:
            continue
        normalized = model.strip()
        if normalized:
            deduplicated.add(normalized)
    return sorted(deduplicated, key=model_sort_key)
