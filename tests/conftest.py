import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import pytest
from typer.testing import CliRunner

from cardstats.core.command_handler import CommandHandler
from cardstats.core.services.acquisition_scheduler import AcquisitionScheduler
from cardstats.core.services.count_estimator import CountEstimator
from cardstats.domain.errors import StorageQuotaExceededError
from cardstats.domain.interfaces.listing_source import ListingSource
from cardstats.domain.interfaces.storage import KeyValueStorage
from cardstats.domain.models.counts import ListingKind, ListingPage
from cardstats.infrastructure.cache.caching_service import CountCache
from cardstats.infrastructure.config.settings import clear_test_config
from cardstats.infrastructure.resilience.api_retry import RetryPolicy
from cardstats.infrastructure.resilience.rate_limiter import RateLimiter

START_TIME = 1_700_000_000.0

class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

class FakeSleep:
    """Records requested delays and advances the clock instead of waiting."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        self.clock.advance(delay)
        await asyncio.sleep(0)

class MemoryStorage(KeyValueStorage):
    """In-memory KeyValueStorage with an optional per-value size ceiling."""

    def __init__(self, max_value_bytes: Optional[int] = None):
        self.data: Dict[str, Any] = {}
        self.max_value_bytes = max_value_bytes
        self.writes: List[str] = []

    async def get(self, key, default=None):
        if key not in self.data:
            return default
        return json.loads(json.dumps(self.data[key]))

    async def set(self, key, value):
        payload = json.dumps(value)
        if self.max_value_bytes is not None and len(payload) > self.max_value_bytes:
            raise StorageQuotaExceededError(key, len(payload), self.max_value_bytes)
        self.data[key] = json.loads(payload)
        self.writes.append(key)

    async def remove(self, key):
        self.data.pop(key, None)

class FakeListingSource(ListingSource):
    """Serves canned listing pages and records every request."""

    def __init__(self):
        self.listings: Dict[Tuple[str, ListingKind], List[ListingPage]] = {}
        self.errors: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, ListingKind, int]] = []
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    def set_listing(self, item_id: str, kind: ListingKind, page_items: List[int]) -> None:
        pages = len(page_items)
        self.listings[(item_id, kind)] = [ListingPage(count, pages) for count in page_items]

    def set_counts(self, item_id: str, owners: int, wants: int) -> None:
        """Single-page listings with the given counts."""
        self.set_listing(item_id, ListingKind.OWNERS, [owners])
        self.set_listing(item_id, ListingKind.WANTS, [wants])

    def first_page_calls(self, item_id: str, kind: ListingKind = ListingKind.OWNERS) -> int:
        return sum(1 for call in self.calls if call == (item_id, kind, 1))

    async def fetch_page(self, item_id, kind, page):
        self.calls.append((item_id, kind, page))
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if item_id in self.errors:
            raise self.errors[item_id]
        pages = self.listings.get((item_id, kind))
        if not pages:
            return ListingPage(item_count=0, page_count=1)
        return pages[page - 1]

    async def close(self):
        self.closed = True

@pytest.fixture(scope="session")
def runner():
    """Provides a Typer CliRunner instance."""
    return CliRunner()

@pytest.fixture(autouse=True)
def reset_test_config():
    yield
    clear_test_config()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def fake_sleep(clock):
    return FakeSleep(clock)

@pytest.fixture
def storage():
    return MemoryStorage()

@pytest.fixture
def listing_source():
    return FakeListingSource()

@pytest.fixture
def cache(storage, clock):
    # Long debounce: tests persist explicitly through flush()
    return CountCache(storage, clock=clock, save_debounce_s=60)

@pytest.fixture
def rate_limiter(clock, fake_sleep):
    return RateLimiter(max_requests=70, time_window=60, clock=clock, sleep=fake_sleep)

@pytest.fixture
def retry_policy(fake_sleep):
    return RetryPolicy(sleep=fake_sleep)

@pytest.fixture
def scheduler(cache, rate_limiter, retry_policy, listing_source, clock, fake_sleep):
    return AcquisitionScheduler(
        cache=cache,
        rate_limiter=rate_limiter,
        retry_policy=retry_policy,
        estimator=CountEstimator(),
        listing_source=listing_source,
        sleep=fake_sleep,
        clock=clock,
    )

@pytest.fixture
def command_handler(cache, scheduler, rate_limiter, storage):
    return CommandHandler(cache=cache, scheduler=scheduler, rate_limiter=rate_limiter, storage=storage)

@pytest.fixture
def make_storage():
    """Factory for additional MemoryStorage instances (e.g. with a quota)."""
    return MemoryStorage
