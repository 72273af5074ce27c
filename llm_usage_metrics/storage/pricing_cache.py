"""
Pricing cache repository.

Reads and writes the locally persisted rate table. A missing, unreadable or
corrupt file is a cache miss, never an error.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from pydantic import ValidationError

from .models import PricingCachePayload

logger = logging.getLogger(__name__)


class PricingCacheRepository:
    """File-backed store for a single PricingCachePayload."""

    def __init__(self, cache_file_path: Union[str, Path]):
        self.cache_file_path = Path(cache_file_path)

    async def read(self) -> Optional[PricingCachePayload]:
        """Load the cached payload, or None if there is no usable cache."""
        return await asyncio.to_thread(self._read_sync)

    async def write(self, payload: PricingCachePayload) -> None:
        """Persist the payload, creating parent directories as needed.

        Raises:
            OSError: If the file cannot be written
        """
        await asyncio.to_thread(self._write_sync, payload)

    def _read_sync(self) -> Optional[PricingCachePayload]:
        try:
            content = self.cache_file_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return None

        try:
            return PricingCachePayload.model_validate_json(content)
        except ValidationError as exc:
            logger.debug("Ignoring corrupt pricing cache %s: %s", self.cache_file_path, exc)
            return None

    def _write_sync(self, payload: PricingCachePayload) -> None:
        self.cache_file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.cache_file_path.with_name(self.cache_file_path.name + ".tmp")
        temp_path.write_text(payload.to_json(), encoding="utf-8")
        temp_path.replace(self.cache_file_path)
