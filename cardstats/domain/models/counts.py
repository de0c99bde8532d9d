"""Domain models for the count acquisition pipeline."""

import enum
from dataclasses import dataclass, field
from typing import Optional, List

from cardstats.domain.models.common import ItemId, Timestamp, ERROR_SENTINEL, SerializedEntry


class ListingKind(str, enum.Enum):
    """The two independent paginated listings tracked per item."""
    OWNERS = "owners"
    WANTS = "wants"


@dataclass
class CacheEntry:
    """Last known counts for one item.

    owners/wants hold ERROR_SENTINEL when the last fetch failed.
    """
    owners: int
    wants: int
    captured_at: Timestamp
    manual_override_at: Optional[Timestamp] = None

    @property
    def has_error(self) -> bool:
        return self.owners == ERROR_SENTINEL

    def to_dict(self) -> SerializedEntry:
        return {
            "owners": self.owners,
            "wants": self.wants,
            "captured_at": self.captured_at,
            "manual_override_at": self.manual_override_at,
        }

    @classmethod
    def from_dict(cls, raw: object) -> Optional["CacheEntry"]:
        """Builds an entry from a serialized mapping, or None if the shape is wrong."""
        if not isinstance(raw, dict):
            return None
        owners = raw.get("owners")
        wants = raw.get("wants")
        captured_at = raw.get("captured_at")
        manual = raw.get("manual_override_at")
        # bool is an int subclass; a flag is never a count
        if not isinstance(owners, int) or isinstance(owners, bool) or owners < ERROR_SENTINEL:
            return None
        if not isinstance(wants, int) or isinstance(wants, bool) or wants < ERROR_SENTINEL:
            return None
        if not isinstance(captured_at, (int, float)) or isinstance(captured_at, bool):
            return None
        if manual is not None and (not isinstance(manual, (int, float)) or isinstance(manual, bool)):
            return None
        return cls(
            owners=owners,
            wants=wants,
            captured_at=Timestamp(float(captured_at)),
            manual_override_at=Timestamp(float(manual)) if manual is not None else None,
        )


@dataclass(frozen=True)
class ListingPage:
    """What one fetched listing page tells us."""
    item_count: int
    page_count: int


@dataclass(frozen=True)
class ItemCounts:
    """Result of estimating both listings for an item."""
    owners: int
    wants: int


class ItemState(str, enum.Enum):
    """Lifecycle of one identifier inside the scheduler."""
    CACHE_HIT = "cache_hit"
    NEEDS_REFRESH = "needs_refresh"
    AWAITING_RATE_SLOT = "awaiting_rate_slot"
    FETCHING = "fetching"
    COMMITTED = "committed"
    FAILED = "failed"
    DROPPED = "dropped"


@dataclass(frozen=True)
class ItemView:
    """What the presentation layer needs to render one item."""
    item_id: ItemId
    owners: int
    wants: int
    is_expired: bool
    is_manually_updated: bool

    @property
    def has_error(self) -> bool:
        return self.owners == ERROR_SENTINEL

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "owners": self.owners,
            "wants": self.wants,
            "is_expired": self.is_expired,
            "is_manually_updated": self.is_manually_updated,
        }


@dataclass(frozen=True)
class ItemResult:
    """Final state of one identifier after a scheduling pass."""
    item_id: ItemId
    state: ItemState
    view: Optional[ItemView] = None
    error: Optional[str] = None


@dataclass
class BatchReport:
    """Outcome of one process_all() pass."""
    requested: int = 0
    cache_hits: int = 0
    committed: int = 0
    failed: int = 0
    dropped: int = 0
    cancelled: bool = False
    views: List[ItemView] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "requested": self.requested,
            "cache_hits": self.cache_hits,
            "committed": self.committed,
            "failed": self.failed,
            "dropped": self.dropped,
            "cancelled": self.cancelled,
        }
