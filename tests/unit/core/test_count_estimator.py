import pytest

from cardstats.core.services.count_estimator import CountEstimator, ListingProfile
from cardstats.domain.models.counts import ListingKind, ListingPage

def page_fetcher(page_items, calls):
    """Fetcher over a fixed list of per-page item counts."""
    async def fetch(page: int) -> ListingPage:
        calls.append(page)
        return ListingPage(item_count=page_items[page - 1], page_count=len(page_items))
    return fetch

@pytest.fixture
def estimator():
    return CountEstimator()

@pytest.mark.asyncio
async def test_small_owner_listing_is_counted_exactly(estimator: CountEstimator):
    calls = []
    items = [36] * 7 + [10]
    count = await estimator.estimate(page_fetcher(items, calls), ListingKind.OWNERS)
    assert count == 36 * 7 + 10
    assert calls == list(range(1, 9))

@pytest.mark.asyncio
async def test_exact_mode_counts_pages_before_the_last_as_full(estimator: CountEstimator):
    calls = []
    # Interior page came back short (e.g. a listing changed mid-walk)
    count = await estimator.estimate(page_fetcher([36, 20, 36, 10], calls), ListingKind.OWNERS)
    assert count == 3 * 36 + 10
    assert calls == [1, 2, 3, 4]

@pytest.mark.asyncio
async def test_large_owner_listing_is_approximated_from_first_page(estimator: CountEstimator):
    calls = []
    count = await estimator.estimate(page_fetcher([36] * 15, calls), ListingKind.OWNERS)
    assert count == 14 * 36 + 18 == 522
    assert calls == [1]

@pytest.mark.asyncio
async def test_owner_threshold_is_inclusive(estimator: CountEstimator):
    calls = []
    await estimator.estimate(page_fetcher([36] * 11, calls), ListingKind.OWNERS)
    assert len(calls) == 11

@pytest.mark.asyncio
async def test_wants_use_their_own_profile(estimator: CountEstimator):
    calls = []
    count = await estimator.estimate(page_fetcher([60] * 6, calls), ListingKind.WANTS)
    assert count == 5 * 60 + 30
    assert calls == [1]

    calls = []
    count = await estimator.estimate(page_fetcher([60, 60, 7], calls), ListingKind.WANTS)
    assert count == 127
    assert calls == [1, 2, 3]

@pytest.mark.asyncio
async def test_empty_single_page(estimator: CountEstimator):
    calls = []
    assert await estimator.estimate(page_fetcher([0], calls), ListingKind.OWNERS) == 0
    assert calls == [1]

@pytest.mark.asyncio
async def test_zero_page_count_is_treated_as_one(estimator: CountEstimator):
    async def fetch(page):
        return ListingPage(item_count=4, page_count=0)
    assert await estimator.estimate(fetch, ListingKind.OWNERS) == 4

def test_custom_profile_overrides_default():
    estimator = CountEstimator({ListingKind.OWNERS: ListingProfile(10, 2, 5)})
    assert estimator.approximate(ListingKind.OWNERS, 4) == 35
    assert estimator.is_exact(ListingKind.OWNERS, 3) is False
    assert estimator.is_exact(ListingKind.WANTS, 5) is True
