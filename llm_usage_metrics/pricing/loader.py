"""
Rate-table loader.

Loads the USD rate table in three tiers:
1. A fresh local cache for the configured URL
2. The network, retried on transient failures, persisting the cache
3. A stale cache for the same URL when the network is unavailable

In offline mode only the cache is consulted, regardless of age.
"""

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import httpx
from pydantic import ValidationError

from llm_usage_metrics.core.errors import (
    OfflinePricingUnavailableError,
    PricingLoadError,
    RateTablePayloadError,
)
from llm_usage_metrics.core.pricing import ModelPricing
from llm_usage_metrics.core.retry import RetryPolicy
from llm_usage_metrics.storage.models import PricingCachePayload
from llm_usage_metrics.storage.paths import get_default_pricing_cache_path
from llm_usage_metrics.storage.pricing_cache import PricingCacheRepository

from .alias_resolver import AliasTable, ModelAliasResolver
from .rate_table import DEFAULT_RATE_TABLE_URL, normalize_rate_table_payload

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_FETCH_TIMEOUT_MS = 4000

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


class PricingOrigin(Enum):
    """Where the active rate table came from."""
    CACHE = "cache"
    NETWORK = "network"
    OFFLINE_CACHE = "offline-cache"
    NONE = "none"


class RateTableFetchError(RuntimeError):
    """Raised when the rate-table endpoint answers with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or 500 <= status_code <= 599


def is_retryable_fetch_error(error: Exception) -> bool:
    """Transient HTTP statuses, timeouts and transport errors are retryable.

    Invalid or empty payloads are not: fetching the same document again
    would not fix them.
    """
    if isinstance(error, RateTableFetchError):
        return error.retryable
    return isinstance(error, httpx.TransportError)


def _epoch_ms() -> float:
    return time.time() * 1000


class RateTableLoader:
    """PricingSource backed by a cached, remotely fetched rate table.

    Call ``load()`` once before resolving; until then every lookup misses.
    """

    def __init__(
        self,
        source_url: str = DEFAULT_RATE_TABLE_URL,
        cache_file_path: Optional[Union[str, Path]] = None,
        cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        fetch_timeout_ms: int = DEFAULT_FETCH_TIMEOUT_MS,
        offline: bool = False,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        alias_table: Optional[AliasTable] = None,
        now: Callable[[], float] = _epoch_ms,
    ):
        self.source_url = source_url
        self.cache_ttl_ms = cache_ttl_ms
        self.fetch_timeout_ms = fetch_timeout_ms
        self.offline = offline
        self._cache = PricingCacheRepository(cache_file_path or get_default_pricing_cache_path())
        self._retry_policy = retry_policy or RetryPolicy(is_retryable=is_retryable_fetch_error)
        self._client = http_client
        self._owns_client = http_client is None
        self._now = now
        self._resolver = ModelAliasResolver(alias_table)
        self._rate_table: Dict[str, ModelPricing] = {}

    @property
    def cache_file_path(self) -> Path:
        return self._cache.cache_file_path

    async def load(self) -> PricingOrigin:
        """Load the rate table.

        Returns:
            The tier the rate table was loaded from

        Raises:
            OfflinePricingUnavailableError: Offline mode without a usable cache
            PricingLoadError: Network failure without a cache to fall back on
        """
        cached = await self._read_matching_cache()

        if cached is not None and self._is_fresh(cached):
            self._set_rate_table(cached.to_rate_table())
            return PricingOrigin.CACHE

        if self.offline:
            if cached is None:
                raise OfflinePricingUnavailableError(
                    "Offline pricing mode enabled but cached pricing is unavailable"
                )
            self._set_rate_table(cached.to_rate_table())
            return PricingOrigin.OFFLINE_CACHE

        try:
            rate_table = await self._retry_policy.run(self._fetch_once)
        except (httpx.HTTPError, RateTableFetchError, RateTablePayloadError) as exc:
            if cached is None:
                raise PricingLoadError(str(exc) or type(exc).__name__) from exc
            logger.warning("Pricing fetch failed, using stale cache: %s", exc)
            self._set_rate_table(cached.to_rate_table())
            return PricingOrigin.CACHE

        self._set_rate_table(rate_table)
        await self._persist(rate_table)
        return PricingOrigin.NETWORK

    def resolve_model_alias(self, model: str) -> str:
        return self._resolver.resolve(model)

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        return self._rate_table.get(self.resolve_model_alias(model))

    async def aclose(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "RateTableLoader":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _read_matching_cache(self) -> Optional[PricingCachePayload]:
        cached = await self._cache.read()
        if cached is None or cached.source_url != self.source_url or not cached.pricing_by_model:
            return None
        return cached

    def _is_fresh(self, cached: PricingCachePayload) -> bool:
        # A cache from the future is never fresh
        age_ms = self._now() - cached.fetched_at
        return 0 <= age_ms <= self.cache_ttl_ms

    def _set_rate_table(self, rate_table: Dict[str, ModelPricing]) -> None:
        self._rate_table = dict(rate_table)
        self._resolver.set_rate_table_keys(self._rate_table.keys())

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def _fetch_once(self) -> Dict[str, ModelPricing]:
        response = await self._get_client().get(
            self.source_url, timeout=self.fetch_timeout_ms / 1000
        )
        if response.status_code >= 400:
            raise RateTableFetchError(
                f"Failed to fetch LiteLLM pricing: HTTP {response.status_code} {response.reason_phrase}".rstrip(),
                status_code=response.status_code,
                retryable=is_retryable_status(response.status_code),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise RateTablePayloadError("LiteLLM pricing payload is not valid JSON") from exc

        return normalize_rate_table_payload(payload)

    async def _persist(self, rate_table: Dict[str, ModelPricing]) -> None:
        try:
            payload = PricingCachePayload.from_rate_table(rate_table, self.source_url, self._now())
            await self._cache.write(payload)
        except (OSError, ValidationError) as exc:
            logger.debug("Could not write pricing cache %s: %s", self.cache_file_path, exc)
