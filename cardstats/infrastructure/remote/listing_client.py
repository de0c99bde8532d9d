"""Concrete implementation of ListingSource over HTTP.

Fetches owners/wants listing pages with httpx and counts matched entries
with BeautifulSoup. Every failure is classified into the domain FetchError
hierarchy right here; callers never look at httpx exceptions.

Note: A single attempt is made per call. Retries and rate limiting are
handled by the caller (RetryPolicy / RateLimiter).
"""

import logging
from typing import Dict, Optional

import httpx
from bs4 import BeautifulSoup

from cardstats.domain.errors import (
    FetchTimeoutError,
    NetworkError,
    NotFoundError,
    ParseError,
    ThrottledError,
)
from cardstats.domain.interfaces.listing_source import ListingSource
from cardstats.domain.models.common import ItemId
from cardstats.domain.models.counts import ListingKind, ListingPage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://mangabuff.ru"
DEFAULT_TIMEOUT_SECONDS = 10.0

LISTING_PATHS: Dict[ListingKind, str] = {
    ListingKind.OWNERS: "/cards/{item_id}/users",
    ListingKind.WANTS: "/cards/{item_id}/offers/want",
}
ITEM_SELECTORS: Dict[ListingKind, str] = {
    ListingKind.OWNERS: ".card-show__owner",
    ListingKind.WANTS: ".profile__friends-item, .users-list__item, .user-card",
}
PAGINATION_SELECTOR = ".pagination__button, .pagination > li > a, .pagination > li, .paginator a"

def parse_listing(html: str, kind: ListingKind, page: int = 1) -> ListingPage:
    """Counts listing entries and reads the highest page number from the pagination.

    Raises:
        ParseError: If the document is empty or a non-first page has no entries.
    """
    if not html or not html.strip():
        raise ParseError(f"Empty {kind.value} listing page {page}")

    soup = BeautifulSoup(html, "lxml")
    item_count = len(soup.select(ITEM_SELECTORS[kind]))

    page_numbers = []
    for element in soup.select(PAGINATION_SELECTOR):
        text = element.get_text(strip=True)
        if text.isdigit() and int(text) > 0:
            page_numbers.append(int(text))
    page_count = max(page_numbers) if page_numbers else 1

    # Page 1 of an empty listing is legitimate; an empty later page means the markup changed
    if page > 1 and item_count == 0:
        raise ParseError(f"No {kind.value} entries found on page {page}")

    return ListingPage(item_count=item_count, page_count=max(page_count, page))

class HttpListingSource(ListingSource):
    """Reads listing pages from the card site."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "cardstats/0.1",
    ):
        """Initializes the HTTP listing source.

        Args:
            base_url: Site root, without a trailing slash.
            timeout_s: Per-request timeout.
            client: Optional preconfigured client (the caller then owns it).
            user_agent: User-Agent header sent with each request.
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"Accept": "text/html", "User-Agent": user_agent},
        )
        logger.info(f"HttpListingSource initialized for {self.base_url} (timeout={timeout_s}s)")

    def listing_url(self, item_id: ItemId, kind: ListingKind) -> str:
        return self.base_url + LISTING_PATHS[kind].format(item_id=item_id)

    async def fetch_page(self, item_id: ItemId, kind: ListingKind, page: int) -> ListingPage:
        url = self.listing_url(item_id, kind)
        params = {"page": page} if page > 1 else None
        logger.debug(f"GET {url} page={page}")

        try:
            response = await self.client.get(url, params=params)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Timed out fetching {kind.value} for {item_id}: {e}", url=url) from e
        except httpx.RequestError as e:
            # Transport failures, redirect loops and undecodable bodies
            raise NetworkError(f"Network failure fetching {kind.value} for {item_id}: {e}", url=url) from e

        if response.status_code == 429:
            raise ThrottledError(
                f"Remote rate limit hit fetching {kind.value} for {item_id}",
                url=url,
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code == 404:
            raise NotFoundError(f"No {kind.value} listing for {item_id}", url=url)
        if response.status_code >= 400:
            raise NetworkError(f"HTTP {response.status_code} fetching {kind.value} for {item_id}", url=url)

        content_type = response.headers.get("Content-Type", "")
        if content_type and "html" not in content_type.lower():
            raise ParseError(f"Expected HTML for {item_id} {kind.value}, got '{content_type}'", url=url)

        try:
            return parse_listing(response.text, kind, page)
        except ParseError as e:
            e.url = url
            raise

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        # HTTP-date values fall back to the fixed throttle delay
        return None
