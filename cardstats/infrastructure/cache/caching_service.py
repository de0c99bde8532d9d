"""Concrete implementation of the count cache.

Keeps the last known owner/want counts per item in memory, decides freshness
with rarity-tiered TTLs, and persists the whole table to durable storage with
a debounced, single-in-flight save. When storage rejects the table as too
large, it is written as fixed-size chunks plus a small metadata record.

Entries are never evicted by normal traffic; only explicit operator actions
(prune_errors, prune_by_age, clear) delete them.
"""

import asyncio
import enum
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from cardstats.domain.errors import StorageQuotaExceededError
from cardstats.domain.interfaces.storage import KeyValueStorage
from cardstats.domain.models.common import (
    CacheStats,
    ERROR_SENTINEL,
    ItemId,
    SerializedEntry,
    StorageKey,
    Timestamp,
)
from cardstats.domain.models.counts import CacheEntry, ItemView

logger = logging.getLogger(__name__)

HOUR = 60 * 60

DEFAULT_CACHE_KEY = "cardstats_cache_v1"
# (max owners, ttl seconds); None closes the last tier. Fewer owners -> shorter TTL
DEFAULT_TTL_TIERS: Tuple[Tuple[Optional[int], float], ...] = (
    (60, 2 * HOUR),
    (110, 6 * HOUR),
    (240, 24 * HOUR),
    (600, 96 * HOUR),
    (1200, 192 * HOUR),
    (None, 336 * HOUR),
)
DEFAULT_MANUAL_COOLDOWN_SECONDS = 1 * HOUR
DEFAULT_ERROR_COOLDOWN_SECONDS = 5 * 60
DEFAULT_SAVE_DEBOUNCE_SECONDS = 2.0
DEFAULT_CHUNK_SIZE = 10_000
DEFAULT_MAX_ENTRIES = 500_000
CHUNK_FORMAT_VERSION = 1
ESTIMATED_ENTRY_BYTES = 100

class SaveState(str, enum.Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    SAVING = "saving"

class CountCache:
    """Tiered-TTL store of last known counts with durable persistence."""

    def __init__(
        self,
        storage: KeyValueStorage,
        cache_key: str = DEFAULT_CACHE_KEY,
        ttl_tiers: Tuple[Tuple[Optional[int], float], ...] = DEFAULT_TTL_TIERS,
        manual_cooldown_s: float = DEFAULT_MANUAL_COOLDOWN_SECONDS,
        error_cooldown_s: float = DEFAULT_ERROR_COOLDOWN_SECONDS,
        save_debounce_s: float = DEFAULT_SAVE_DEBOUNCE_SECONDS,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        if not ttl_tiers or ttl_tiers[-1][0] is not None:
            raise ValueError("ttl_tiers must end with an open (None) tier")
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        self.storage = storage
        self.cache_key = StorageKey(cache_key)
        self.meta_key = StorageKey(f"{cache_key}_meta")
        self.ttl_tiers = ttl_tiers
        self.manual_cooldown_s = manual_cooldown_s
        self.error_cooldown_s = error_cooldown_s
        self.save_debounce_s = save_debounce_s
        self.chunk_size = chunk_size
        self._clock = clock

        self.data: Dict[ItemId, CacheEntry] = {}
        self.state = SaveState.IDLE
        self._dirty = False
        self._save_timer: Optional[asyncio.Task] = None
        self._save_task: Optional[asyncio.Task] = None
        self._save_lock = asyncio.Lock()

        logger.info(
            f"CountCache initialized: key={cache_key}, debounce={save_debounce_s}s, "
            f"chunk_size={chunk_size}, manual_cooldown={manual_cooldown_s}s"
        )

    def _chunk_key(self, index: int) -> StorageKey:
        return StorageKey(f"{self.cache_key}_chunk_{index}")

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    # --- Loading ---

    async def load(self) -> int:
        """Loads the table, preferring chunked data when chunk metadata exists."""
        try:
            meta = await self.storage.get(self.meta_key)
            chunks = meta.get("chunks") if isinstance(meta, dict) else None
            if isinstance(chunks, int) and chunks > 0:
                loaded: Dict[ItemId, CacheEntry] = {}
                for index in range(chunks):
                    chunk = await self.storage.get(self._chunk_key(index))
                    if chunk is None:
                        logger.warning(f"Cache chunk {index}/{chunks} is missing")
                        continue
                    loaded.update(self._decode(chunk))
                self.data = loaded
                logger.info(f"Cache loaded: {len(self.data)} entries from {chunks} chunks")
            else:
                raw = await self.storage.get(self.cache_key)
                self.data = self._decode(raw) if raw else {}
                logger.info(f"Cache loaded: {len(self.data)} entries")
        except Exception as e:
            logger.error(f"Cache load error, starting empty: {e}", exc_info=True)
            self.data = {}
        self._dirty = False
        return len(self.data)

    def _decode(self, raw: Any) -> Dict[ItemId, CacheEntry]:
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring cache payload of type {type(raw).__name__}")
            return {}
        decoded: Dict[ItemId, CacheEntry] = {}
        for key, value in raw.items():
            entry = CacheEntry.from_dict(value)
            if entry is not None and isinstance(key, str) and key:
                decoded[ItemId(key)] = entry
        skipped = len(raw) - len(decoded)
        if skipped:
            logger.warning(f"Skipped {skipped} malformed cache entries")
        return decoded

    # --- Persistence ---

    def schedule_save(self) -> None:
        """Marks the table dirty and (re)starts the debounce timer."""
        self._dirty = True
        self._cancel_timer()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; save deferred until flush()")
            return
        self._save_timer = loop.create_task(self._debounced_save())
        if self.state is not SaveState.SAVING:
            self.state = SaveState.SCHEDULED

    def _cancel_timer(self) -> None:
        if self._save_timer is not None and not self._save_timer.done():
            self._save_timer.cancel()
        self._save_timer = None

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.save_debounce_s)
        # From here on a reschedule must not cancel the save we are about to await
        self._save_timer = None
        try:
            await self.persist()
        except Exception as e:
            logger.error(f"Cache persist error: {e}", exc_info=True)

    async def persist(self) -> None:
        """Saves the table. Concurrent callers share the in-flight save."""
        if self._save_task is None or self._save_task.done():
            self._save_task = asyncio.ensure_future(self._do_persist())
        await asyncio.shield(self._save_task)

    async def flush(self) -> None:
        """Cancels the debounce timer and saves now, including late changes."""
        self._cancel_timer()
        await self.persist()
        if self._dirty:
            # Changed while the previous save was in flight
            await self.persist()

    async def _do_persist(self) -> None:
        async with self._save_lock:
            if not self._dirty:
                self._settle_state()
                return
            self.state = SaveState.SAVING
            # Later set() calls mark the table dirty again and are saved next time
            self._dirty = False
            snapshot = {key: entry.to_dict() for key, entry in self.data.items()}
            try:
                await self._write(snapshot)
            except BaseException:
                self._dirty = True
                raise
            finally:
                self._settle_state()

    def _settle_state(self) -> None:
        pending = self._save_timer is not None and not self._save_timer.done()
        self.state = SaveState.SCHEDULED if pending else SaveState.IDLE

    async def _write(self, snapshot: Dict[ItemId, SerializedEntry]) -> None:
        try:
            await self.storage.set(self.cache_key, snapshot)
        except StorageQuotaExceededError as e:
            logger.warning(f"Storage quota exceeded ({e}), attempting chunked save...")
            await self._persist_chunked(snapshot)
            return
        # A single blob is authoritative now; stale chunks must not shadow it on load
        await self._drop_chunks()
        logger.info(f"Cache saved: {len(snapshot)} entries")

    async def _persist_chunked(self, snapshot: Dict[ItemId, SerializedEntry]) -> None:
        items = list(snapshot.items())
        chunks = [
            dict(items[start:start + self.chunk_size])
            for start in range(0, len(items), self.chunk_size)
        ]
        previous = await self.storage.get(self.meta_key)
        previous_chunks = previous.get("chunks", 0) if isinstance(previous, dict) else 0

        for index, chunk in enumerate(chunks):
            await self.storage.set(self._chunk_key(index), chunk)

        await self.storage.set(self.meta_key, {
            "chunks": len(chunks),
            "total_entries": len(items),
            "version": CHUNK_FORMAT_VERSION,
        })
        for index in range(len(chunks), previous_chunks if isinstance(previous_chunks, int) else 0):
            await self.storage.remove(self._chunk_key(index))
        await self.storage.remove(self.cache_key)
        logger.info(f"Cache saved in {len(chunks)} chunks ({len(items)} total entries)")

    async def _drop_chunks(self) -> None:
        meta = await self.storage.get(self.meta_key)
        if not isinstance(meta, dict):
            return
        chunks = meta.get("chunks")
        for index in range(chunks if isinstance(chunks, int) else 0):
            await self.storage.remove(self._chunk_key(index))
        await self.storage.remove(self.meta_key)
        logger.debug("Removed stale chunked cache data")

    # --- Entry access ---

    def get(self, item_id: ItemId) -> Optional[CacheEntry]:
        return self.data.get(item_id)

    def set(self, item_id: ItemId, owners: int, wants: int, is_manual: bool = False) -> CacheEntry:
        """Records fresh counts (or the error sentinel) for an item."""
        now = Timestamp(self._clock())
        entry = self.data.get(item_id)
        if entry is None:
            entry = CacheEntry(owners=owners, wants=wants, captured_at=now)
            self.data[item_id] = entry
        else:
            entry.owners = owners
            entry.wants = wants
            entry.captured_at = now
        if is_manual:
            entry.manual_override_at = now
        self.schedule_save()
        return entry

    def ttl(self, owners: int) -> float:
        """Freshness window in seconds for an owner count."""
        if owners == ERROR_SENTINEL:
            return 0.0
        for max_owners, ttl in self.ttl_tiers:
            if max_owners is None or owners <= max_owners:
                return ttl
        return self.ttl_tiers[-1][1]

    def is_valid(self, entry: Optional[CacheEntry]) -> bool:
        if entry is None or entry.has_error:
            return False
        return (self._clock() - entry.captured_at) < self.ttl(entry.owners)

    def is_expired(self, entry: Optional[CacheEntry]) -> bool:
        return not self.is_valid(entry)

    def has_error(self, entry: Optional[CacheEntry]) -> bool:
        return entry is not None and entry.has_error

    def is_recently_manual(self, entry: Optional[CacheEntry]) -> bool:
        if entry is None or entry.manual_override_at is None:
            return False
        return (self._clock() - entry.manual_override_at) < self.manual_cooldown_s

    def is_in_error_cooldown(self, entry: Optional[CacheEntry]) -> bool:
        """True for a failed entry captured less than error_cooldown_s ago."""
        if entry is None or not entry.has_error:
            return False
        return (self._clock() - entry.captured_at) < self.error_cooldown_s

    def view(self, item_id: ItemId) -> Optional[ItemView]:
        entry = self.data.get(item_id)
        if entry is None:
            return None
        return ItemView(
            item_id=item_id,
            owners=entry.owners,
            wants=entry.wants,
            is_expired=self.is_expired(entry),
            is_manually_updated=self.is_recently_manual(entry),
        )

    # --- Operator actions ---

    async def import_entries(self, payload: Any) -> int:
        """Merges exported entries; an incoming entry wins only if it is newer."""
        if not isinstance(payload, dict):
            logger.warning(f"Invalid import data of type {type(payload).__name__}")
            return 0

        imported = 0
        for key, raw in payload.items():
            if not isinstance(key, str) or not key:
                continue
            entry = CacheEntry.from_dict(raw)
            if entry is None:
                continue
            existing = self.data.get(ItemId(key))
            if existing is None or entry.captured_at > existing.captured_at:
                self.data[ItemId(key)] = entry
                imported += 1

        if imported > 0:
            self._dirty = True
            await self.persist()
            logger.info(f"Imported {imported}/{len(payload)} cache entries")
        return imported

    def export_entries(self) -> Dict[ItemId, SerializedEntry]:
        return {key: entry.to_dict() for key, entry in self.data.items()}

    async def prune_errors(self) -> int:
        """Deletes entries whose last fetch failed. Stale entries are kept."""
        doomed = [key for key, entry in self.data.items() if entry.has_error]
        for key in doomed:
            del self.data[key]
        if doomed:
            self._dirty = True
            await self.persist()
            logger.info(f"Removed {len(doomed)} error entries")
        return len(doomed)

    async def prune_by_age(self, max_age_s: float) -> int:
        """Deletes entries captured more than max_age_s ago."""
        if max_age_s < 0:
            raise ValueError("max_age_s must not be negative")
        now = self._clock()
        doomed = [key for key, entry in self.data.items() if now - entry.captured_at > max_age_s]
        for key in doomed:
            del self.data[key]
        if doomed:
            self._dirty = True
            await self.persist()
            logger.info(f"Removed {len(doomed)} entries older than {max_age_s / 86400:.1f} days")
        return len(doomed)

    async def clear(self) -> None:
        """Deletes every entry, in memory and in storage."""
        self._cancel_timer()
        self.data.clear()
        async with self._save_lock:
            await self._drop_chunks()
            await self.storage.set(self.cache_key, {})
            self._dirty = False
            self._settle_state()
        logger.info("Cache cleared")

    # --- Statistics ---

    def stats(self) -> CacheStats:
        now = self._clock()
        entries = list(self.data.values())
        valid = sum(1 for entry in entries if self.is_valid(entry))
        errors = sum(1 for entry in entries if entry.has_error)
        oldest = newest = 0
        if entries:
            oldest = int((now - min(entry.captured_at for entry in entries)) // HOUR)
            newest = int((now - max(entry.captured_at for entry in entries)) // 60)
        return {
            "total": len(entries),
            "valid": valid,
            "expired": len(entries) - valid,
            "errors": errors,
            "oldest_entry_hours": oldest,
            "newest_entry_minutes": newest,
        }

    def entries_by_status(self) -> Dict[str, List[ItemId]]:
        grouped: Dict[str, List[ItemId]] = {"valid": [], "expired": [], "errors": []}
        for key, entry in self.data.items():
            if entry.has_error:
                grouped["errors"].append(key)
            elif self.is_expired(entry):
                grouped["expired"].append(key)
            else:
                grouped["valid"].append(key)
        return grouped

    def memory_estimate(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> Dict[str, Any]:
        size = len(self.data) * ESTIMATED_ENTRY_BYTES
        return {
            "bytes": size,
            "mb": round(size / 1024 / 1024, 2),
            "entries": len(self.data),
            "max_entries": max_entries,
            "percent_full": round(len(self.data) / max_entries * 100, 1),
        }
