"""
Persisted data models.

Schema for the pricing cache file. Everything read back from disk is
validated here before the rest of the pipeline sees it.
"""

import math
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from llm_usage_metrics.core.pricing import ModelPricing, ReasoningBilling


class CachedModelPricing(BaseModel):
    """One cached rate-table entry, rates in USD per million tokens."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    input_per_1m_usd: float = Field(alias="inputPer1MUsd", ge=0, allow_inf_nan=False)
    output_per_1m_usd: float = Field(alias="outputPer1MUsd", ge=0, allow_inf_nan=False)
    cache_read_per_1m_usd: Optional[float] = Field(default=None, alias="cacheReadPer1MUsd")
    cache_write_per_1m_usd: Optional[float] = Field(default=None, alias="cacheWritePer1MUsd")
    reasoning_per_1m_usd: Optional[float] = Field(default=None, alias="reasoningPer1MUsd")

    @field_validator("cache_read_per_1m_usd", "cache_write_per_1m_usd", "reasoning_per_1m_usd", mode="before")
    @classmethod
    def _drop_invalid_optional_rate(cls, value: Any) -> Optional[float]:
        # Optional rates are extracted independently; a bad one is just absent
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        try:
            rate = float(value)
        except OverflowError:
            return None
        if not math.isfinite(rate) or rate < 0:
            return None
        return rate

    def to_model_pricing(self) -> ModelPricing:
        return ModelPricing(
            input_per_1m_usd=self.input_per_1m_usd,
            output_per_1m_usd=self.output_per_1m_usd,
            cache_read_per_1m_usd=self.cache_read_per_1m_usd,
            cache_write_per_1m_usd=self.cache_write_per_1m_usd,
            reasoning_per_1m_usd=self.reasoning_per_1m_usd,
            reasoning_billing=(
                ReasoningBilling.SEPARATE
                if self.reasoning_per_1m_usd is not None
                else ReasoningBilling.INCLUDED_IN_OUTPUT
            ),
        )

    @classmethod
    def from_model_pricing(cls, pricing: ModelPricing) -> "CachedModelPricing":
        return cls(
            input_per_1m_usd=pricing.input_per_1m_usd,
            output_per_1m_usd=pricing.output_per_1m_usd,
            cache_read_per_1m_usd=pricing.cache_read_per_1m_usd,
            cache_write_per_1m_usd=pricing.cache_write_per_1m_usd,
            reasoning_per_1m_usd=pricing.reasoning_per_1m_usd,
        )


class PricingCachePayload(BaseModel):
    """Pricing cache file contents.

    ``fetched_at`` is a Unix timestamp in milliseconds. Malformed model
    entries are dropped individually; a payload missing any top-level field
    fails validation as a whole.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    fetched_at: float = Field(alias="fetchedAt", ge=0, allow_inf_nan=False)
    source_url: str = Field(alias="sourceUrl", min_length=1)
    pricing_by_model: Dict[str, CachedModelPricing] = Field(alias="pricingByModel")

    @field_validator("pricing_by_model", mode="before")
    @classmethod
    def _drop_invalid_entries(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return value

        usable = {}
        for model_name, raw_pricing in value.items():
            try:
                usable[model_name] = CachedModelPricing.model_validate(raw_pricing)
            except ValidationError:
                continue
        return usable

    def to_rate_table(self) -> Dict[str, ModelPricing]:
        """Rate table keyed by normalized (trimmed, lower-case) model name."""
        return {
            model_name.strip().lower(): pricing.to_model_pricing()
            for model_name, pricing in self.pricing_by_model.items()
        }

    @classmethod
    def from_rate_table(
        cls,
        rate_table: Dict[str, ModelPricing],
        source_url: str,
        fetched_at_ms: float,
    ) -> "PricingCachePayload":
        return cls(
            fetched_at=fetched_at_ms,
            source_url=source_url,
            pricing_by_model={
                model_name: CachedModelPricing.from_model_pricing(pricing)
                for model_name, pricing in rate_table.items()
            },
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
