"""Domain Events related to count acquisition.

Emitted when requests are deferred by the local budget, retried, committed,
failed, or dropped because their batch went stale.
"""

from dataclasses import dataclass, field
import time
from typing import Optional

from cardstats.domain.models.common import ItemId


@dataclass
class DomainEvent:
    """Base class for domain events."""
    pass


@dataclass
class RequestDeferred(DomainEvent):
    """A request is waiting for a local rate-limit slot."""
    item_id: ItemId
    wait_time_seconds: float
    timestamp: float = field(default_factory=time.time)


@dataclass
class RetryScheduled(DomainEvent):
    """A failed fetch will be attempted again after a delay."""
    attempt_number: int
    max_attempts: int
    delay_seconds: float
    error_type: str
    throttled: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass
class CountsCommitted(DomainEvent):
    """Fresh counts were written to the cache."""
    item_id: ItemId
    owners: int
    wants: int
    manual: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass
class FetchFailed(DomainEvent):
    """All attempts failed; the error sentinel was written."""
    item_id: ItemId
    error_type: str
    error_message: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class WriteDropped(DomainEvent):
    """A result arrived for a batch generation that is no longer current."""
    item_id: ItemId
    batch_generation: int
    current_generation: int
    reason: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
