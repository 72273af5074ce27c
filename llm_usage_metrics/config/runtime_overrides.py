"""
Runtime tuning through environment variables.

Every override is a bounded integer: blank or non-numeric values fall back to
the default, fractional values are truncated and out-of-range values clamp.
"""

import math
import os
from dataclasses import dataclass
from typing import List, Mapping, Optional

MINUTE_MS = 60_000
DAY_MS = 24 * 60 * 60 * 1000

PRICING_CACHE_TTL_ENV = "LLM_USAGE_PRICING_CACHE_TTL_MS"
PRICING_FETCH_TIMEOUT_ENV = "LLM_USAGE_PRICING_FETCH_TIMEOUT_MS"
PRICING_MAX_ATTEMPTS_ENV = "LLM_USAGE_PRICING_MAX_ATTEMPTS"
PRICING_RETRY_BASE_DELAY_ENV = "LLM_USAGE_PRICING_RETRY_BASE_DELAY_MS"
PARSE_MAX_PARALLEL_ENV = "LLM_USAGE_PARSE_MAX_PARALLEL"

ENV_VAR_DESCRIPTIONS = {
    PRICING_CACHE_TTL_ENV: "pricing cache TTL",
    PRICING_FETCH_TIMEOUT_ENV: "pricing fetch timeout",
    PRICING_MAX_ATTEMPTS_ENV: "pricing fetch attempts",
    PRICING_RETRY_BASE_DELAY_ENV: "pricing retry base delay",
    PARSE_MAX_PARALLEL_ENV: "max parallel file parsing",
}


@dataclass(frozen=True)
class EnvVarOverride:
    name: str
    value: str
    description: str


@dataclass(frozen=True)
class PricingRuntimeConfig:
    cache_ttl_ms: int
    fetch_timeout_ms: int
    max_attempts: int
    retry_base_delay_ms: int


@dataclass(frozen=True)
class ParsingRuntimeConfig:
    max_parallel_file_parsing: int


def resolve_bounded_env_integer(value: Optional[str], fallback: int, minimum: int, maximum: int) -> int:
    """Parse an env value into an integer clamped to ``[minimum, maximum]``."""
    if value is None or not value.strip():
        return fallback

    try:
        parsed = float(value.strip())
    except ValueError:
        return fallback

    if not math.isfinite(parsed):
        return fallback

    return min(maximum, max(minimum, int(parsed)))


def get_pricing_runtime_config(env: Optional[Mapping[str, str]] = None) -> PricingRuntimeConfig:
    env = os.environ if env is None else env
    return PricingRuntimeConfig(
        cache_ttl_ms=resolve_bounded_env_integer(
            env.get(PRICING_CACHE_TTL_ENV), fallback=DAY_MS, minimum=MINUTE_MS, maximum=30 * DAY_MS
        ),
        fetch_timeout_ms=resolve_bounded_env_integer(
            env.get(PRICING_FETCH_TIMEOUT_ENV), fallback=4_000, minimum=200, maximum=30_000
        ),
        max_attempts=resolve_bounded_env_integer(
            env.get(PRICING_MAX_ATTEMPTS_ENV), fallback=3, minimum=1, maximum=10
        ),
        retry_base_delay_ms=resolve_bounded_env_integer(
            env.get(PRICING_RETRY_BASE_DELAY_ENV), fallback=250, minimum=0, maximum=10_000
        ),
    )


def get_parsing_runtime_config(env: Optional[Mapping[str, str]] = None) -> ParsingRuntimeConfig:
    env = os.environ if env is None else env
    return ParsingRuntimeConfig(
        max_parallel_file_parsing=resolve_bounded_env_integer(
            env.get(PARSE_MAX_PARALLEL_ENV), fallback=8, minimum=1, maximum=64
        ),
    )


def get_active_env_var_overrides(env: Optional[Mapping[str, str]] = None) -> List[EnvVarOverride]:
    """List the tuning variables that are set to a non-empty value."""
    env = os.environ if env is None else env
    return [
        EnvVarOverride(name=name, value=env[name], description=description)
        for name, description in ENV_VAR_DESCRIPTIONS.items()
        if env.get(name)
    ]
