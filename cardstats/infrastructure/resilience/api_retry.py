"""Service for executing listing requests with automatic retries.

Implements exponential backoff for transient failures (network errors,
timeouts, unexpected markup) and a separate, slower policy for throttling
responses (HTTP 429) from the remote side.
"""

import logging
import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from cardstats.domain.errors import FetchError, ThrottledError
from cardstats.domain.events.acquisition_events import RetryScheduled
from cardstats.domain.models.common import BackoffPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_S = 1.0
DEFAULT_MAX_DELAY_S = 10.0
DEFAULT_THROTTLE_DELAY_S = 15.0
DEFAULT_THROTTLE_MAX_ATTEMPTS = 3

class RetryPolicy:
    """Runs a fallible async operation with bounded retries.

    Generic FetchErrors back off exponentially (base, 2x base, ... up to
    max_delay) for at most max_attempts attempts. ThrottledErrors use a fixed
    throttle_delay and their own throttle_max_attempts ceiling. Anything that
    is not a FetchError is a programming error and propagates immediately.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_s: float = DEFAULT_BASE_DELAY_S,
        max_delay_s: float = DEFAULT_MAX_DELAY_S,
        throttle_delay_s: float = DEFAULT_THROTTLE_DELAY_S,
        throttle_max_attempts: int = DEFAULT_THROTTLE_MAX_ATTEMPTS,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """Initializes the RetryPolicy.

        Args:
            max_attempts: Total attempts allowed for generic failures.
            base_delay_s: Delay before the first generic retry.
            max_delay_s: Cap for the exponential delay.
            throttle_delay_s: Fixed delay after a throttling response.
            throttle_max_attempts: Total attempts allowed for throttling responses.
            sleep: Awaitable sleep (defaults to asyncio.sleep).
        """
        if max_attempts < 1 or throttle_max_attempts < 1:
            raise ValueError("attempt ceilings must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.throttle_delay_s = throttle_delay_s
        self.throttle_max_attempts = throttle_max_attempts
        self._sleep = sleep or asyncio.sleep

        logger.info(
            f"RetryPolicy initialized: max_attempts={max_attempts}, "
            f"backoff={base_delay_s}s..{max_delay_s}s, "
            f"throttle={throttle_delay_s}s x{throttle_max_attempts}"
        )

    @classmethod
    def from_policy(cls, policy: BackoffPolicy, **kwargs: Any) -> "RetryPolicy":
        return cls(
            max_attempts=policy["max_attempts"],
            base_delay_s=policy["base_delay"],
            max_delay_s=policy["max_delay"],
            throttle_delay_s=policy["throttle_delay"],
            throttle_max_attempts=policy["throttle_max_attempts"],
            **kwargs,
        )

    def backoff_delay(self, failures: int) -> float:
        """Delay after the n-th generic failure (1-based)."""
        return min(self.base_delay_s * (2 ** (failures - 1)), self.max_delay_s)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        description: str = "request",
        on_retry: Optional[Callable[[RetryScheduled], None]] = None,
    ) -> T:
        """Executes the operation, retrying classified failures.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt.
            description: Label used in log messages.
            on_retry: Optional hook receiving a RetryScheduled event before each wait.

        Returns:
            The operation's result.

        Raises:
            FetchError: The last failure once its attempt ceiling is reached.
        """
        failures = 0
        throttled = 0

        while True:
            try:
                return await operation()
            except ThrottledError as e:
                throttled += 1
                if throttled >= self.throttle_max_attempts:
                    logger.error(f"Throttled {throttled} times on {description}, giving up: {e}")
                    raise
                delay = self.throttle_delay_s
                if e.retry_after is not None:
                    delay = max(delay, e.retry_after)
                event = RetryScheduled(
                    attempt_number=throttled,
                    max_attempts=self.throttle_max_attempts,
                    delay_seconds=delay,
                    error_type=type(e).__name__,
                    throttled=True,
                )
                logger.warning(
                    f"Throttled on {description} ({throttled}/{self.throttle_max_attempts}). "
                    f"Waiting {delay:.2f}s..."
                )
            except FetchError as e:
                failures += 1
                if failures >= self.max_attempts:
                    logger.error(f"Max attempts ({self.max_attempts}) reached for {description}. Last error: {e}")
                    raise
                delay = self.backoff_delay(failures)
                event = RetryScheduled(
                    attempt_number=failures,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error_type=type(e).__name__,
                )
                logger.warning(
                    f"Retryable error on {description} (attempt {failures}/{self.max_attempts}): "
                    f"{type(e).__name__}. Waiting {delay:.2f}s..."
                )

            if on_retry:
                on_retry(event)
            await self._sleep(event.delay_seconds)
