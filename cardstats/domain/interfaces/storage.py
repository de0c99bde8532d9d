"""Interface for durable key/value storage.

Defines the contract the count cache and the rate limiter use to survive
restarts. Implementations have a capacity ceiling per value and signal it
with StorageQuotaExceededError.
"""

import abc
from typing import Any

from cardstats.domain.models.common import StorageKey


class KeyValueStorage(abc.ABC):
    """Abstract Base Class for asynchronous key/value persistence."""

    @abc.abstractmethod
    async def get(self, key: StorageKey, default: Any = None) -> Any:
        """Reads a stored value.

        Args:
            key: The storage key.
            default: Returned when the key is absent.

        Returns:
            The decoded value or the default.
        """
        pass

    @abc.abstractmethod
    async def set(self, key: StorageKey, value: Any) -> None:
        """Stores a JSON-serializable value under a key.

        Raises:
            StorageQuotaExceededError: If the encoded value exceeds the
                storage capacity ceiling.
        """
        pass

    @abc.abstractmethod
    async def remove(self, key: StorageKey) -> None:
        """Deletes a key. Missing keys are ignored."""
        pass

    def close(self) -> None:
        """Releases underlying handles. Optional for implementations."""
        return None
