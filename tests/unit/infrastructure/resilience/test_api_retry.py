import pytest
from unittest.mock import AsyncMock

from cardstats.domain.errors import NetworkError, ParseError, ThrottledError
from cardstats.infrastructure.resilience.api_retry import RetryPolicy

@pytest.fixture
def policy(fake_sleep):
    return RetryPolicy(
        max_attempts=3,
        base_delay_s=1.0,
        max_delay_s=10.0,
        throttle_delay_s=15.0,
        throttle_max_attempts=3,
        sleep=fake_sleep,
    )

@pytest.mark.asyncio
async def test_returns_first_success(policy: RetryPolicy, fake_sleep):
    operation = AsyncMock(return_value="ok")
    assert await policy.execute(operation) == "ok"
    operation.assert_awaited_once()
    assert fake_sleep.delays == []

@pytest.mark.asyncio
async def test_retries_with_exponential_backoff(policy: RetryPolicy, fake_sleep):
    operation = AsyncMock(side_effect=[NetworkError("down"), ParseError("bad"), "ok"])
    assert await policy.execute(operation) == "ok"
    assert operation.await_count == 3
    assert fake_sleep.delays == [1.0, 2.0]

@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(policy: RetryPolicy, fake_sleep):
    operation = AsyncMock(side_effect=NetworkError("down"))
    with pytest.raises(NetworkError):
        await policy.execute(operation)
    assert operation.await_count == 3
    assert fake_sleep.delays == [1.0, 2.0]

def test_backoff_is_capped():
    policy = RetryPolicy(base_delay_s=1.0, max_delay_s=5.0)
    assert [policy.backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

@pytest.mark.asyncio
async def test_throttling_uses_fixed_delay_and_own_ceiling(policy: RetryPolicy, fake_sleep):
    operation = AsyncMock(side_effect=ThrottledError("429"))
    with pytest.raises(ThrottledError):
        await policy.execute(operation)
    assert operation.await_count == 3
    assert fake_sleep.delays == [15.0, 15.0]

@pytest.mark.asyncio
async def test_throttling_does_not_consume_generic_budget(policy: RetryPolicy, fake_sleep):
    operation = AsyncMock(side_effect=[
        NetworkError("down"), ThrottledError("429"), NetworkError("down"), ThrottledError("429"), "ok",
    ])
    assert await policy.execute(operation) == "ok"
    assert fake_sleep.delays == [1.0, 15.0, 2.0, 15.0]

@pytest.mark.asyncio
async def test_retry_after_extends_throttle_delay(policy: RetryPolicy, fake_sleep):
    operation = AsyncMock(side_effect=[ThrottledError("429", retry_after=40), "ok"])
    await policy.execute(operation)
    assert fake_sleep.delays == [40]

@pytest.mark.asyncio
async def test_non_fetch_errors_propagate_immediately(policy: RetryPolicy, fake_sleep):
    operation = AsyncMock(side_effect=KeyError("bug"))
    with pytest.raises(KeyError):
        await policy.execute(operation)
    operation.assert_awaited_once()
    assert fake_sleep.delays == []

@pytest.mark.asyncio
async def test_on_retry_receives_events(policy: RetryPolicy, mocker):
    hook = mocker.MagicMock()
    operation = AsyncMock(side_effect=[ThrottledError("429"), NetworkError("down"), "ok"])
    await policy.execute(operation, description="owners page 1", on_retry=hook)

    events = [c.args[0] for c in hook.call_args_list]
    assert [e.throttled for e in events] == [True, False]
    assert events[0].delay_seconds == 15.0
    assert events[1].error_type == "NetworkError"
    assert events[1].attempt_number == 1

def test_from_policy():
    policy = RetryPolicy.from_policy({
        "max_attempts": 5,
        "base_delay": 0.5,
        "max_delay": 8.0,
        "throttle_delay": 30.0,
        "throttle_max_attempts": 2,
    })
    assert policy.max_attempts == 5
    assert policy.throttle_delay_s == 30.0
    assert policy.backoff_delay(2) == 1.0
