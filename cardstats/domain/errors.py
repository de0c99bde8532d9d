"""Domain error taxonomy.

Fetch failures form a closed set of five kinds. Adapters construct the
matching subclass at the point a failure is classified; nothing downstream
inspects error messages to recover the kind.
"""

import enum
from typing import Optional


class FetchErrorKind(str, enum.Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    THROTTLED = "throttled"
    PARSE = "parse"
    NOT_FOUND = "not_found"


class FetchError(Exception):
    """Base class for classified remote fetch failures."""

    kind: FetchErrorKind = FetchErrorKind.NETWORK

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        super().__init__(message)


class NetworkError(FetchError):
    """Transport failure or an unexpected HTTP status."""
    kind = FetchErrorKind.NETWORK


class FetchTimeoutError(FetchError):
    """The remote side did not answer within the request timeout."""
    kind = FetchErrorKind.TIMEOUT


class ThrottledError(FetchError):
    """The remote side rejected the request with a rate limit (HTTP 429)."""
    kind = FetchErrorKind.THROTTLED

    def __init__(self, message: str, url: Optional[str] = None, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message, url=url)


class ParseError(FetchError):
    """Listing markup did not match the expected shape."""
    kind = FetchErrorKind.PARSE


class NotFoundError(FetchError):
    """The item or listing does not exist (HTTP 404)."""
    kind = FetchErrorKind.NOT_FOUND


class StorageQuotaExceededError(Exception):
    """Raised by durable storage when a value exceeds its capacity ceiling."""

    def __init__(self, key: str, size: int, limit: int):
        self.key = key
        self.size = size
        self.limit = limit
        super().__init__(f"QUOTA_BYTES exceeded for '{key}': {size} > {limit} bytes")


class RateLimitExceededError(Exception):
    """The local request budget denied a request that may not wait."""

    def __init__(self, reset_in_seconds: int):
        self.reset_in_seconds = reset_in_seconds
        super().__init__(f"Local rate limit reached, next slot in {reset_in_seconds}s")


class BatchCancelledError(Exception):
    """The batch generation advanced while work was still waiting."""
