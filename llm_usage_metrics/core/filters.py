"""
Event filtering and filter-option validation.

Filters run in a fixed order over the concatenated event list:
1. Provider - case-insensitive substring on the event provider
2. Date - local calendar day within an inclusive [since, until] range
3. Model - per-token exact or substring match, mode chosen from the
   events that survived steps 1 and 2
"""

import re
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Union
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

from .errors import InputValidationError
from .events import UsageEvent
from .time_buckets import local_date

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

FilterInput = Union[str, Sequence[str], None]


class ModelMatchMode(Enum):
    """How a model filter token is compared against event models."""
    EXACT = "exact"
    SUBSTRING = "substring"


@dataclass(frozen=True)
class ModelFilterRule:
    value: str
    mode: ModelMatchMode

    def matches(self, model: str) -> bool:
        if self.mode == ModelMatchMode.EXACT:
            return model == self.value
        return self.value in model


@dataclass(frozen=True)
class EventFilterOptions:
    """Filter settings for one report run."""
    timezone: ZoneInfo
    since: Optional[str] = None
    until: Optional[str] = None
    provider_filter: Optional[str] = None
    model_filter: Optional[List[str]] = None


def validate_date_input(value: str, flag_name: str) -> None:
    """Validate a ``YYYY-MM-DD`` calendar date.

    Raises:
        InputValidationError: If the format or the date itself is invalid
    """
    if not isinstance(value, str) or not _DATE_PATTERN.match(value):
        raise InputValidationError(f"{flag_name} must use format YYYY-MM-DD")
    try:
        date.fromisoformat(value)
    except ValueError:
        raise InputValidationError(f"{flag_name} has an invalid calendar date")


def validate_date_range(since: Optional[str], until: Optional[str]) -> None:
    """Validate both bounds and reject an inverted range."""
    if since:
        validate_date_input(since, "--since")
    if until:
        validate_date_input(until, "--until")
    if since and until and since > until:
        raise InputValidationError("--since must be less than or equal to --until")


def normalize_provider_filter(provider: Optional[str]) -> Optional[str]:
    if not provider:
        return None
    normalized = provider.strip().lower()
    return normalized or None


def _split_filter_tokens(value: FilterInput, flag_name: str) -> Optional[List[str]]:
    if value is None:
        return None

    candidates = [value] if isinstance(value, str) else list(value)
    if not candidates:
        return None

    tokens = []
    for candidate in candidates:
        for token in candidate.split(","):
            normalized = token.strip().lower()
            if not normalized:
                raise InputValidationError(
                    f"{flag_name} contains an empty value in {candidate!r}"
                )
            tokens.append(normalized)
    return tokens


def normalize_source_filter(source: FilterInput) -> Optional[Set[str]]:
    """Normalize ``--source`` values into a set of lower-case source ids."""
    tokens = _split_filter_tokens(source, "--source")
    return set(tokens) if tokens is not None else None


def normalize_model_filter(model: FilterInput) -> Optional[List[str]]:
    """Normalize ``--model`` values into de-duplicated lower-case tokens."""
    tokens = _split_filter_tokens(model, "--model")
    if tokens is None:
        return None
    return list(dict.fromkeys(tokens))


def validate_source_filter_values(source_filter: Optional[Set[str]], available_source_ids: Iterable[str]) -> None:
    """Reject source ids that no adapter provides."""
    if not source_filter:
        return

    available = {source_id.lower() for source_id in available_source_ids}
    unknown_sources = sorted(source for source in source_filter if source not in available)
    if not unknown_sources:
        return

    raise InputValidationError(
        f"Unknown --source value(s): {', '.join(unknown_sources)}. "
        f"Allowed values: {', '.join(sorted(available))}"
    )


def validate_pricing_url(pricing_url: Optional[str]) -> Optional[str]:
    """Return the trimmed pricing URL, requiring an http(s) URL with a host."""
    if pricing_url is None:
        return None

    normalized = pricing_url.strip()
    parsed = urlparse(normalized)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InputValidationError("--pricing-url must be a valid http(s) URL")
    return normalized


def parse_source_dir_overrides(entries: Optional[Sequence[str]]) -> Dict[str, str]:
    """Parse ``--source-dir id=path`` entries.

    Raises:
        InputValidationError: If an entry lacks the ``=`` separator, the id or
            the path, or repeats a source id
    """
    overrides: Dict[str, str] = {}
    for entry in entries or []:
        source_id, separator, directory = entry.partition("=")
        source_id = source_id.strip().lower()
        directory = directory.strip()
        if not separator or not source_id or not directory:
            raise InputValidationError(
                f"--source-dir must use format <source-id>=<path>, got {entry!r}"
            )
        if source_id in overrides:
            raise InputValidationError(f"Duplicate --source-dir source id: {source_id}")
        overrides[source_id] = directory
    return overrides


def matches_provider(provider: Optional[str], provider_filter: Optional[str]) -> bool:
    if not provider_filter:
        return True
    if not provider:
        return False
    return provider_filter in provider.lower()


def filter_events_by_date_range(
    events: List[UsageEvent],
    tz: ZoneInfo,
    since: Optional[str],
    until: Optional[str],
) -> List[UsageEvent]:
    if not since and not until:
        return list(events)

    filtered = []
    for event in events:
        event_day = local_date(event.timestamp, tz).isoformat()
        if since and event_day < since:
            continue
        if until and event_day > until:
            continue
        filtered.append(event)
    return filtered


def resolve_model_filter_rules(
    events: List[UsageEvent],
    model_filter: Optional[List[str]],
) -> Optional[List[ModelFilterRule]]:
    """Decide each token's match mode once, from the given event set."""
    if not model_filter:
        return None

    available_models = {event.model.lower() for event in events if event.model}
    return [
        ModelFilterRule(
            value=token,
            mode=ModelMatchMode.EXACT if token in available_models else ModelMatchMode.SUBSTRING,
        )
        for token in model_filter
    ]


def matches_model(model: Optional[str], rules: Optional[List[ModelFilterRule]]) -> bool:
    if not rules:
        return True
    if not model:
        return False
    normalized = model.lower()
    return any(rule.matches(normalized) for rule in rules)


def filter_usage_events(events: List[UsageEvent], options: EventFilterOptions) -> List[UsageEvent]:
    """Apply provider, date and model filters in order.

    The model-filter mode must be computed from the provider- and
    date-filtered events, not from the full input.

    Args:
        events: Concatenated events from every parsed source
        options: Filter settings for the run

    Returns:
        Events passing all three filters, in input order
    """
    provider_filtered = [
        event for event in events if matches_provider(event.provider, options.provider_filter)
    ]
    date_filtered = filter_events_by_date_range(
        provider_filtered, options.timezone, options.since, options.until
    )
    rules = resolve_model_filter_rules(date_filtered, options.model_filter)
    return [event for event in date_filtered if matches_model(event.model, rules)]
