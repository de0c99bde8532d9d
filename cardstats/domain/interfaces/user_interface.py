"""Interface for presenting results to the user.

Defines the contract for displaying item counts, aggregate statistics,
errors, warnings and informational messages, allowing different UI
implementations (e.g., console, a browser badge renderer).
"""

import abc
from typing import Any, Dict, Iterable

from cardstats.domain.models.counts import ItemView


class UserInterface(abc.ABC):
    """Abstract Base Class for user interaction."""

    @abc.abstractmethod
    def display_items(self, views: Iterable[ItemView], **kwargs: Any) -> None:
        """Displays owner/want counts for a set of items.

        Args:
            views: Per-item presentation records.
            **kwargs: Additional arguments for formatting (e.g., title).
        """
        pass

    @abc.abstractmethod
    def display_stats(self, stats: Dict[str, Any], **kwargs: Any) -> None:
        """Displays aggregate cache and rate-limit statistics.

        Args:
            stats: The payload returned by the get-stats command.
            **kwargs: Additional arguments for formatting.
        """
        pass

    @abc.abstractmethod
    def display_error(self, error_message: str, **kwargs: Any) -> None:
        """Displays an error message to the user.

        Args:
            error_message: The error message string.
            **kwargs: Additional arguments for formatting.
        """
        pass

    @abc.abstractmethod
    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        """Displays a warning message to the user.

        Args:
            warning_message: The warning message string.
            **kwargs: Additional arguments for formatting.
        """
        pass

    @abc.abstractmethod
    def display_info(self, info_message: str, **kwargs: Any) -> None:
        """Displays an informational message to the user.

        Args:
            info_message: The informational message string.
            **kwargs: Additional arguments for formatting.
        """
        pass

    def display_item(self, view: ItemView, **kwargs: Any) -> None:
        """Displays a single item as it completes. Defaults to display_items."""
        self.display_items([view], **kwargs)
