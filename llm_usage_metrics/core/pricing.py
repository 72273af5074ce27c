"""
Pricing types and per-event cost estimation.

Holds the rate-table entry type, the pricing-source interface the cost engine
depends on, a fixed in-memory pricing source, and the cost engine itself.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .events import CostMode, UsageEvent

ONE_MILLION = 1_000_000


class ReasoningBilling(Enum):
    """Whether reasoning tokens are billed on their own rate."""
    INCLUDED_IN_OUTPUT = "included-in-output"
    SEPARATE = "separate"


@dataclass(frozen=True)
class ModelPricing:
    """USD rates per one million tokens for a single model."""
    input_per_1m_usd: float
    output_per_1m_usd: float
    cache_read_per_1m_usd: Optional[float] = None
    cache_write_per_1m_usd: Optional[float] = None
    reasoning_per_1m_usd: Optional[float] = None
    reasoning_billing: ReasoningBilling = ReasoningBilling.INCLUDED_IN_OUTPUT


@runtime_checkable
class PricingSource(Protocol):
    """Anything that can map a model name onto a rate-table entry."""

    def resolve_model_alias(self, model: str) -> str:
        ...

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        ...


def _normalize_key(key: str) -> str:
    return key.strip().lower()


class StaticPricingSource:
    """Fixed pricing table with an optional chain of model aliases."""

    def __init__(self, pricing_by_model: Dict[str, ModelPricing], model_aliases: Optional[Dict[str, str]] = None):
        self._pricing_by_model = {
            _normalize_key(model): pricing for model, pricing in pricing_by_model.items()
        }
        self._model_aliases = {
            _normalize_key(alias): _normalize_key(target)
            for alias, target in (model_aliases or {}).items()
        }

    def resolve_model_alias(self, model: str) -> str:
        """Follow the alias chain until it ends or revisits a name."""
        resolved = _normalize_key(model)
        visited = set()
        while resolved not in visited:
            visited.add(resolved)
            next_model = self._model_aliases.get(resolved)
            if not next_model:
                return resolved
            resolved = next_model
        return resolved

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        return self._pricing_by_model.get(self.resolve_model_alias(model))


def _token_group_cost(tokens: int, per_1m_usd: Optional[float]) -> float:
    if not per_1m_usd or per_1m_usd <= 0 or not tokens or tokens <= 0:
        return 0.0
    return (tokens / ONE_MILLION) * per_1m_usd


def calculate_estimated_cost_usd(event: UsageEvent, pricing: ModelPricing) -> float:
    """Estimate the USD cost of one event.

    Reasoning tokens only add a term when the model bills them separately;
    otherwise they are assumed to be included in the output rate.

    Args:
        event: Usage event to price
        pricing: Rate-table entry for the event's model

    Returns:
        Non-negative cost in USD
    """
    cost = (
        _token_group_cost(event.input_tokens, pricing.input_per_1m_usd)
        + _token_group_cost(event.output_tokens, pricing.output_per_1m_usd)
        + _token_group_cost(event.cache_read_tokens, pricing.cache_read_per_1m_usd)
        + _token_group_cost(event.cache_write_tokens, pricing.cache_write_per_1m_usd)
    )
    if pricing.reasoning_billing == ReasoningBilling.SEPARATE:
        cost += _token_group_cost(event.reasoning_tokens, pricing.reasoning_per_1m_usd)
    return cost


def apply_pricing_to_event(event: UsageEvent, pricing_source: PricingSource) -> UsageEvent:
    """Price a single event.

    Explicitly costed events are returned unchanged. Events without a model
    or without resolvable pricing are marked estimated with no cost rather
    than given a fabricated number.
    """
    if event.cost_mode == CostMode.EXPLICIT and event.cost_usd is not None:
        return event

    if not event.model:
        return event.with_pricing(None, CostMode.ESTIMATED)

    pricing = pricing_source.get_pricing(event.model)
    if pricing is None:
        return event.with_pricing(None, CostMode.ESTIMATED)

    return event.with_pricing(calculate_estimated_cost_usd(event, pricing), CostMode.ESTIMATED)


def apply_pricing_to_events(events: List[UsageEvent], pricing_source: PricingSource) -> List[UsageEvent]:
    return [apply_pricing_to_event(event, pricing_source) for event in events]
