"""Interface for the remote count source.

Defines the contract for fetching one page of an item's owners or wants
listing. Implementations raise the FetchError subclass matching the failure.
"""

import abc

from cardstats.domain.models.common import ItemId
from cardstats.domain.models.counts import ListingKind, ListingPage


class ListingSource(abc.ABC):
    """Abstract Base Class for paginated listing access."""

    @abc.abstractmethod
    async def fetch_page(self, item_id: ItemId, kind: ListingKind, page: int) -> ListingPage:
        """Fetches one listing page.

        Args:
            item_id: The item whose listing is requested.
            kind: Owners or wants listing.
            page: 1-based page number.

        Returns:
            The number of matched items on the page and the total page count.

        Raises:
            NetworkError, FetchTimeoutError, ThrottledError, ParseError,
            NotFoundError: classified failures.
        """
        pass

    async def close(self) -> None:
        """Releases network resources. Optional for implementations."""
        return None
