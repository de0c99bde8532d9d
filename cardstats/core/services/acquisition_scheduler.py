"""Application Service: orchestrates count refreshes.

Filters candidate identifiers against the cache, splits the rest into
fixed-size groups, and runs each group concurrently. Every page request
waits for a rate-limit slot and goes through the retry policy. Results are
committed to the cache only if the batch generation that started them is
still current. Concurrent requests for one identifier share a single fetch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from cardstats.core.services.count_estimator import CountEstimator, PageFetcher
from cardstats.domain.errors import BatchCancelledError, FetchError, RateLimitExceededError
from cardstats.domain.events.acquisition_events import (
    CountsCommitted,
    DomainEvent,
    FetchFailed,
    RequestDeferred,
    WriteDropped,
)
from cardstats.domain.interfaces.listing_source import ListingSource
from cardstats.domain.models.common import ERROR_SENTINEL, ItemId
from cardstats.domain.models.counts import (
    BatchReport,
    ItemCounts,
    ItemResult,
    ItemState,
    ItemView,
    ListingKind,
)
from cardstats.infrastructure.cache.caching_service import CountCache
from cardstats.infrastructure.resilience.api_retry import RetryPolicy
from cardstats.infrastructure.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 4
DEFAULT_BATCH_PAUSE_SECONDS = 5.0
MIN_SLOT_WAIT_SECONDS = 0.05

class BatchGeneration:
    """Monotonic counter; advancing it voids every outstanding token."""

    def __init__(self) -> None:
        self.current = 0

    def token(self) -> "CancellationToken":
        return CancellationToken(source=self, generation=self.current)

    def advance(self) -> int:
        self.current += 1
        return self.current

@dataclass(frozen=True)
class CancellationToken:
    source: BatchGeneration
    generation: int

    @property
    def is_cancelled(self) -> bool:
        return self.source.current != self.generation

@dataclass
class PendingFetch:
    """An in-flight fetch, with the token and slot mode of the caller that started it."""
    task: asyncio.Task
    token: CancellationToken
    wait_for_slot: bool

class AcquisitionScheduler:
    """Runs fetch/estimate/commit for batches and for single priority items."""

    def __init__(
        self,
        cache: CountCache,
        rate_limiter: RateLimiter,
        retry_policy: RetryPolicy,
        estimator: CountEstimator,
        listing_source: ListingSource,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_pause_s: float = DEFAULT_BATCH_PAUSE_SECONDS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock: Callable[[], float] = time.monotonic,
        on_result: Optional[Callable[[ItemView], None]] = None,
        on_event: Optional[Callable[[DomainEvent], None]] = None,
    ):
        """Initializes the scheduler.

        Args:
            cache: Count cache consulted before and written after each fetch.
            rate_limiter: Shared outbound request budget.
            retry_policy: Retry/backoff policy for each page request.
            estimator: Turns listing pages into counts.
            listing_source: Remote count source.
            batch_size: Group size and per-group concurrency.
            batch_pause_s: Minimum time between the starts of consecutive groups.
            sleep: Awaitable sleep (defaults to asyncio.sleep).
            clock: Monotonic clock used for pacing.
            on_result: Presentation hook called with each item's view.
            on_event: Hook receiving domain events.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy
        self.estimator = estimator
        self.listing_source = listing_source
        self.batch_size = batch_size
        self.batch_pause_s = batch_pause_s
        self._sleep = sleep or asyncio.sleep
        self._clock = clock
        self.on_result = on_result
        self.on_event = on_event

        self.generation = BatchGeneration()
        self.pending: Dict[ItemId, PendingFetch] = {}
        self.states: Dict[ItemId, ItemState] = {}

        logger.info(f"AcquisitionScheduler initialized: batch_size={batch_size}, pause={batch_pause_s}s")

    @property
    def pending_count(self) -> int:
        return len(self.pending)

    def cancel_current_batch(self) -> int:
        """Voids all in-flight writes of the current generation."""
        generation = self.generation.advance()
        logger.info(f"Batch generation advanced to {generation}; pending writes will be dropped")
        return generation

    def needs_refresh(self, item_id: ItemId) -> bool:
        entry = self.cache.get(item_id)
        if self.cache.is_valid(entry) or self.cache.is_recently_manual(entry):
            return False
        # Failed entries are never valid; the cooldown stops a hot retry loop
        if self.cache.is_in_error_cooldown(entry):
            return False
        return True

    # --- Batch path ---

    async def process_all(self, item_ids: Iterable[str]) -> BatchReport:
        """Refreshes every identifier whose cached counts are not fresh."""
        token = self.generation.token()
        ordered: List[ItemId] = list(dict.fromkeys(ItemId(i) for i in item_ids if i))
        report = BatchReport(requested=len(ordered))

        stale: List[ItemId] = []
        for item_id in ordered:
            if self.needs_refresh(item_id):
                self.states[item_id] = ItemState.NEEDS_REFRESH
                stale.append(item_id)
                continue
            self.states[item_id] = ItemState.CACHE_HIT
            report.cache_hits += 1
            view = self.cache.view(item_id)
            if view is not None:
                report.views.append(view)
                self._publish(view)

        logger.info(
            f"Processing {len(ordered)} items: {report.cache_hits} cached, {len(stale)} to refresh "
            f"(generation {token.generation})"
        )

        group_started: Optional[float] = None
        for start in range(0, len(stale), self.batch_size):
            if group_started is not None:
                remaining = self.batch_pause_s - (self._clock() - group_started)
                if remaining > 0:
                    await self._sleep(remaining)
            if token.is_cancelled:
                logger.info(f"Batch generation {token.generation} cancelled; {len(stale) - start} items skipped")
                break

            group = stale[start:start + self.batch_size]
            group_started = self._clock()
            results = await asyncio.gather(
                *(self._run_item(item_id, token, manual=False, wait_for_slot=True) for item_id in group)
            )
            for result in results:
                if result.state is ItemState.COMMITTED:
                    report.committed += 1
                elif result.state is ItemState.FAILED:
                    report.failed += 1
                else:
                    report.dropped += 1
                if result.view is not None:
                    report.views.append(result.view)

        report.cancelled = token.is_cancelled
        logger.info(
            f"Batch done: committed={report.committed}, failed={report.failed}, "
            f"dropped={report.dropped}, cancelled={report.cancelled}"
        )
        return report

    # --- Priority path ---

    async def priority_update(self, item_id: str) -> ItemResult:
        """Refreshes one item now, regardless of freshness, and marks it manual.

        Raises:
            RateLimitExceededError: If the local budget has no free slot.
        """
        token = self.generation.token()
        logger.info(f"Priority update requested for {item_id}")
        return await self._run_item(ItemId(item_id), token, manual=True, wait_for_slot=False)

    # --- Shared pipeline ---

    async def _run_item(
        self, item_id: ItemId, token: CancellationToken, manual: bool, wait_for_slot: bool
    ) -> ItemResult:
        try:
            counts = await self._fetch_shared(item_id, token, wait_for_slot)
        except BatchCancelledError:
            return self._drop(item_id, token, "cancelled while waiting for a rate slot")
        except RateLimitExceededError:
            # Only non-waiting callers see this; waiting ones requeue in _fetch_shared
            self.states[item_id] = ItemState.NEEDS_REFRESH
            raise
        except FetchError as e:
            logger.warning(f"Fetch failed for {item_id}: {type(e).__name__}: {e}")
            return self._fail(item_id, token, e)
        except Exception as e:
            # Unclassified failures still only fail their own item
            logger.error(f"Unexpected error refreshing {item_id}: {e}", exc_info=True)
            return self._fail(item_id, token, e)

        if token.is_cancelled:
            return self._drop(item_id, token, "batch generation advanced")

        self.cache.set(item_id, counts.owners, counts.wants, is_manual=manual)
        self.states[item_id] = ItemState.COMMITTED
        self._emit(CountsCommitted(item_id=item_id, owners=counts.owners, wants=counts.wants, manual=manual))
        view = self.cache.view(item_id)
        self._publish(view)
        return ItemResult(item_id=item_id, state=ItemState.COMMITTED, view=view)

    def _fail(self, item_id: ItemId, token: CancellationToken, error: Exception) -> ItemResult:
        if token.is_cancelled:
            return self._drop(item_id, token, f"failed after cancellation: {error}")
        self.cache.set(item_id, ERROR_SENTINEL, ERROR_SENTINEL)
        self.states[item_id] = ItemState.FAILED
        self._emit(FetchFailed(item_id=item_id, error_type=type(error).__name__, error_message=str(error)))
        view = self.cache.view(item_id)
        self._publish(view)
        return ItemResult(item_id=item_id, state=ItemState.FAILED, view=view, error=str(error))

    def _drop(self, item_id: ItemId, token: CancellationToken, reason: str) -> ItemResult:
        self.states[item_id] = ItemState.DROPPED
        self._emit(WriteDropped(
            item_id=item_id,
            batch_generation=token.generation,
            current_generation=self.generation.current,
            reason=reason,
        ))
        logger.debug(f"Dropped result for {item_id}: {reason}")
        return ItemResult(item_id=item_id, state=ItemState.DROPPED, view=self.cache.view(item_id), error=reason)

    async def _fetch_shared(
        self, item_id: ItemId, token: CancellationToken, wait_for_slot: bool
    ) -> ItemCounts:
        pending = self.pending.get(item_id)
        if pending is None:
            task = asyncio.ensure_future(self._fetch_counts(item_id, token, wait_for_slot))
            pending = PendingFetch(task=task, token=token, wait_for_slot=wait_for_slot)
            self.pending[item_id] = pending
            task.add_done_callback(lambda done, key=item_id: self._forget(key, done))
        else:
            logger.debug(f"Fetch for {item_id} already in flight; awaiting it")

        try:
            return await asyncio.shield(pending.task)
        except BatchCancelledError:
            # The fetch died with its owner's generation, not ours
            if pending.token is token or token.is_cancelled:
                raise
            logger.debug(f"Shared fetch for {item_id} was cancelled with its batch; fetching again")
        except RateLimitExceededError:
            # A priority fetch was denied a slot; a waiting caller can still queue for one
            if pending.wait_for_slot or not wait_for_slot:
                raise
            logger.debug(f"Shared priority fetch for {item_id} was denied a slot; queueing for one")
        return await self._fetch_shared(item_id, token, wait_for_slot)

    def _forget(self, item_id: ItemId, task: asyncio.Task) -> None:
        pending = self.pending.get(item_id)
        if pending is not None and pending.task is task:
            del self.pending[item_id]
        if not task.cancelled():
            # Mark the outcome retrieved even if every awaiter went away
            task.exception()

    async def _fetch_counts(
        self, item_id: ItemId, token: CancellationToken, wait_for_slot: bool
    ) -> ItemCounts:
        owners = await self.estimator.estimate(
            self._page_fetcher(item_id, ListingKind.OWNERS, token, wait_for_slot), ListingKind.OWNERS
        )
        wants = await self.estimator.estimate(
            self._page_fetcher(item_id, ListingKind.WANTS, token, wait_for_slot), ListingKind.WANTS
        )
        return ItemCounts(owners=owners, wants=wants)

    def _page_fetcher(
        self, item_id: ItemId, kind: ListingKind, token: CancellationToken, wait_for_slot: bool
    ) -> PageFetcher:
        async def fetch(page: int):
            async def attempt():
                await self._acquire_slot(item_id, token, wait_for_slot)
                self.states[item_id] = ItemState.FETCHING
                return await self.listing_source.fetch_page(item_id, kind, page)

            return await self.retry_policy.execute(
                attempt, description=f"{kind.value} page {page} of {item_id}", on_retry=self._emit
            )

        return fetch

    async def _acquire_slot(self, item_id: ItemId, token: CancellationToken, wait_for_slot: bool) -> None:
        while not self.rate_limiter.try_acquire():
            if not wait_for_slot:
                raise RateLimitExceededError(self.rate_limiter.stats()["reset_in_seconds"])
            if token.is_cancelled:
                raise BatchCancelledError(f"generation {token.generation} is no longer current")
            wait_time = max(self.rate_limiter.get_wait_time(), MIN_SLOT_WAIT_SECONDS)
            self.states[item_id] = ItemState.AWAITING_RATE_SLOT
            self._emit(RequestDeferred(item_id=item_id, wait_time_seconds=wait_time))
            await self._sleep(wait_time)

    def _emit(self, event: DomainEvent) -> None:
        logger.debug(f"EVENT: {event}")
        if self.on_event:
            self.on_event(event)

    def _publish(self, view: Optional[ItemView]) -> None:
        if view is not None and self.on_result:
            self.on_result(view)
