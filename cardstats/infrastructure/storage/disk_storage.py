"""Concrete implementation of the KeyValueStorage interface.

Stores JSON-encoded values in a diskcache.Cache directory. Each value is
limited to max_value_bytes, mirroring the per-item ceiling of browser
extension storage that the chunked cache persistence works around.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Union

import diskcache as dc

from cardstats.domain.errors import StorageQuotaExceededError
from cardstats.domain.interfaces.storage import KeyValueStorage
from cardstats.domain.models.common import StorageKey

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = Path.home() / ".cardstats" / "storage"
DEFAULT_MAX_VALUE_BYTES = 8 * 1024 * 1024 # 8 MiB per value

class DiskStorage(KeyValueStorage):
    """diskcache-backed storage with a per-value size ceiling."""

    def __init__(
        self,
        directory: Union[str, Path] = DEFAULT_STORAGE_DIR,
        max_value_bytes: int = DEFAULT_MAX_VALUE_BYTES,
    ):
        self.directory = Path(directory)
        self.max_value_bytes = max_value_bytes
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            # Values never expire; the count cache manages freshness itself
            self._cache = dc.Cache(str(self.directory), timeout=1)
        except OSError as e:
            logger.error(f"Failed to open storage directory {self.directory}: {e}")
            raise
        logger.info(f"DiskStorage initialized at {self.directory} (max value {max_value_bytes} bytes)")

    def _encode(self, key: StorageKey, value: Any) -> bytes:
        payload = json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
        if len(payload) > self.max_value_bytes:
            raise StorageQuotaExceededError(key, len(payload), self.max_value_bytes)
        return payload

    async def get(self, key: StorageKey, default: Any = None) -> Any:
        raw = await asyncio.to_thread(self._cache.get, key, None)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Discarding undecodable storage value for '{key}': {e}")
            return default

    async def set(self, key: StorageKey, value: Any) -> None:
        payload = self._encode(key, value)
        await asyncio.to_thread(self._cache.set, key, payload)
        logger.debug(f"Stored {len(payload)} bytes under '{key}'")

    async def remove(self, key: StorageKey) -> None:
        await asyncio.to_thread(self._cache.delete, key)

    def close(self) -> None:
        self._cache.close()
