"""Defines common Value Objects used across different domain contexts.

These objects represent simple values or concepts like item identifiers,
storage keys, statistics payloads, etc., ensuring consistency and type safety.
"""

from typing import NewType, Any, Dict, TypedDict, Optional

# === Core Value Objects ===

# Using NewType for semantic clarity, although they are plain values at runtime.
ItemId = NewType("ItemId", str)                # Stable key under which counts are cached
StorageKey = NewType("StorageKey", str)        # Key in the durable key/value storage
Timestamp = NewType("Timestamp", float)        # Epoch seconds
FilePath = NewType("FilePath", str)            # Path of an ids file or export document

# Sentinel stored in owners/wants when the last fetch failed
ERROR_SENTINEL = -1

# === Control Surface Context ===
ActionName = NewType("ActionName", str)        # e.g. 'get-stats', 'refresh-all'
CommandRequest = Dict[str, Any]                # {'action': ..., **params}
CommandResponse = Dict[str, Any]               # {'success': bool, 'error'?: str, ...}

# --- Structured Data ---
class RateLimitStats(TypedDict):
    """Snapshot of the outbound request window."""
    current: int
    max: int
    remaining: int
    reset_in_seconds: int

class CacheStats(TypedDict):
    """Aggregate statistics over the count cache."""
    total: int
    valid: int
    expired: int
    errors: int
    oldest_entry_hours: int
    newest_entry_minutes: int

class SerializedEntry(TypedDict):
    """Shape of one cache entry in storage and in exported files."""
    owners: int
    wants: int
    captured_at: float
    manual_override_at: Optional[float]

class BackoffPolicy(TypedDict):
    """Value Object representing retry backoff configuration."""
    max_attempts: int
    base_delay: float
    max_delay: float
    throttle_delay: float
    throttle_max_attempts: int
