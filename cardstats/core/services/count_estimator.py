"""Converts paginated listing pages into owner/want counts.

Small listings are walked page by page: every page before the last counts
as full and the last page's items are counted exactly. Large listings are approximated
from the page count alone: every page but the last is full, and the last page
is assumed half full. Beyond the threshold one more request per page buys
too little accuracy for its share of the request budget.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from cardstats.domain.models.counts import ListingKind, ListingPage

logger = logging.getLogger(__name__)

PageFetcher = Callable[[int], Awaitable[ListingPage]]

@dataclass(frozen=True)
class ListingProfile:
    """Pagination constants for one listing kind."""
    items_per_page: int
    exact_threshold: int # Max page count that is still enumerated
    last_page_estimate: int

DEFAULT_PROFILES: Dict[ListingKind, ListingProfile] = {
    ListingKind.OWNERS: ListingProfile(items_per_page=36, exact_threshold=11, last_page_estimate=18),
    ListingKind.WANTS: ListingProfile(items_per_page=60, exact_threshold=5, last_page_estimate=30),
}

class CountEstimator:
    """Chooses between exact enumeration and page-count approximation."""

    def __init__(self, profiles: Optional[Dict[ListingKind, ListingProfile]] = None):
        self.profiles = dict(DEFAULT_PROFILES)
        if profiles:
            self.profiles.update(profiles)

    def approximate(self, kind: ListingKind, page_count: int) -> int:
        profile = self.profiles[kind]
        return (page_count - 1) * profile.items_per_page + profile.last_page_estimate

    def is_exact(self, kind: ListingKind, page_count: int) -> bool:
        return page_count <= self.profiles[kind].exact_threshold

    async def estimate(self, fetch_page: PageFetcher, kind: ListingKind) -> int:
        """Returns the count for one listing.

        Args:
            fetch_page: Fetches a 1-based page; page 1 also reports the page count.
            kind: Which listing's pagination constants apply.
        """
        first = await fetch_page(1)
        page_count = max(1, first.page_count)

        if not self.is_exact(kind, page_count):
            count = self.approximate(kind, page_count)
            logger.debug(f"{kind.value}: {page_count} pages, approximated to {count}")
            return count

        last = first
        for page in range(2, page_count + 1):
            last = await fetch_page(page)
        # Pages before the last are full by construction of the pagination
        total = (page_count - 1) * self.profiles[kind].items_per_page + last.item_count
        logger.debug(f"{kind.value}: {page_count} pages, counted {total} exactly")
        return total
