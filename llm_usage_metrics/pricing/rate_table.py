"""
Remote rate-table normalization.

Converts a LiteLLM-style ``model -> per-token cost`` document into
per-million-token ModelPricing entries.
"""

import math
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from llm_usage_metrics.core.errors import RateTablePayloadError
from llm_usage_metrics.core.pricing import ONE_MILLION, ModelPricing, ReasoningBilling

DEFAULT_RATE_TABLE_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json"
)


def _to_non_negative_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    if isinstance(value, str) and not value.strip():
        return None
    try:
        parsed = float(value)
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(parsed) or parsed < 0:
        return None
    return parsed


class RateTableEntry(BaseModel):
    """Per-token cost fields of one rate-table entry.

    Unknown fields are ignored; any cost that is not a finite non-negative
    number (or numeric string) is treated as absent.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    input_cost_per_token: Optional[float] = None
    input_cost_per_token_priority: Optional[float] = None
    output_cost_per_token: Optional[float] = None
    output_cost_per_token_priority: Optional[float] = None
    cache_read_input_token_cost: Optional[float] = None
    cache_read_input_token_cost_priority: Optional[float] = None
    cache_creation_input_token_cost: Optional[float] = None
    output_cost_per_reasoning_token: Optional[float] = None

    @field_validator("*", mode="before")
    @classmethod
    def _coerce_cost(cls, value: Any) -> Optional[float]:
        return _to_non_negative_number(value)

    def to_model_pricing(self) -> Optional[ModelPricing]:
        """Per-million pricing, or None without usable input and output rates."""
        input_per_token = _first_defined(self.input_cost_per_token, self.input_cost_per_token_priority)
        output_per_token = _first_defined(self.output_cost_per_token, self.output_cost_per_token_priority)
        cache_read_per_token = _first_defined(
            self.cache_read_input_token_cost, self.cache_read_input_token_cost_priority
        )
        reasoning_per_1m_usd = _per_million(self.output_cost_per_reasoning_token)

        input_per_1m_usd = _per_million(input_per_token)
        output_per_1m_usd = _per_million(output_per_token)
        if input_per_1m_usd is None or output_per_1m_usd is None:
            return None

        return ModelPricing(
            input_per_1m_usd=input_per_1m_usd,
            output_per_1m_usd=output_per_1m_usd,
            cache_read_per_1m_usd=_per_million(cache_read_per_token),
            cache_write_per_1m_usd=_per_million(self.cache_creation_input_token_cost),
            reasoning_per_1m_usd=reasoning_per_1m_usd,
            reasoning_billing=(
                ReasoningBilling.SEPARATE
                if reasoning_per_1m_usd is not None
                else ReasoningBilling.INCLUDED_IN_OUTPUT
            ),
        )


def _first_defined(*values: Optional[float]) -> Optional[float]:
    for value in values:
        if value is not None:
            return value
    return None


def _per_million(per_token: Optional[float]) -> Optional[float]:
    """Scale a per-token rate; a rate that overflows to infinity is absent."""
    if per_token is None:
        return None
    per_million = per_token * ONE_MILLION
    return per_million if math.isfinite(per_million) else None


def normalize_rate_table_payload(payload: Any) -> Dict[str, ModelPricing]:
    """Normalize a decoded rate-table document.

    Args:
        payload: Decoded JSON document

    Returns:
        Rate table keyed by trimmed, lower-case model name

    Raises:
        RateTablePayloadError: If the payload is not an object or holds no
            usable entry
    """
    if not isinstance(payload, dict):
        raise RateTablePayloadError("LiteLLM pricing payload must be a JSON object")

    rate_table: Dict[str, ModelPricing] = {}
    for model_name, raw_entry in payload.items():
        if not isinstance(model_name, str) or not isinstance(raw_entry, dict):
            continue
        pricing = RateTableEntry.model_validate(raw_entry).to_model_pricing()
        if pricing is None:
            continue
        normalized_name = model_name.strip().lower()
        if normalized_name:
            rate_table[normalized_name] = pricing

    if not rate_table:
        raise RateTablePayloadError(
            "LiteLLM pricing payload did not contain any usable model pricing entries"
        )
    return rate_table
