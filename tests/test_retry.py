from unittest.mock import AsyncMock, patch

import pytest

from sms_bridge.config.reliability_config import RetryConfig
from sms_bridge.infra.reliability.retry import (
    EqualJitter,
    FullJitter,
    RetryExhaustedError,
    compute_delay_ms,
    get_jitter_strategy,
    retry_async,
)


def flaky(failures: int, result="ok"):
    """AsyncMock failing `failures` times before returning `result`."""
    return AsyncMock(side_effect=[ConnectionError(f"fail {i}") for i in range(failures)] + [result])


@pytest.mark.asyncio
async def test_returns_first_success():
    func = flaky(0)

    assert await retry_async(func, retry_config=RetryConfig(max_attempts=3, jitter=False)) == "ok"
    assert func.await_count == 1


@pytest.mark.asyncio
async def test_retries_until_success():
    func = flaky(2)
    cfg = RetryConfig(max_attempts=3, initial_delay_ms=0, jitter=False)

    assert await retry_async(func, "a", retry_config=cfg, key="b") == "ok"
    assert func.await_count == 3
    func.assert_awaited_with("a", key="b")


@pytest.mark.asyncio
async def test_exhaustion_wraps_last_error():
    func = flaky(5)
    cfg = RetryConfig(max_attempts=2, initial_delay_ms=0, jitter=False)

    with pytest.raises(RetryExhaustedError) as exc_info:
        await retry_async(func, retry_config=cfg, context="unit")

    assert exc_info.value.attempts == 2
    assert str(exc_info.value.last_error) == "fail 1"
    assert exc_info.value.__cause__ is exc_info.value.last_error
    assert func.await_count == 2


@pytest.mark.asyncio
async def test_retry_condition_rejection_reraises_original():
    func = AsyncMock(side_effect=ValueError("bad input"))
    cfg = RetryConfig(max_attempts=5, initial_delay_ms=0, retry_condition=lambda e: not isinstance(e, ValueError))

    with pytest.raises(ValueError):
        await retry_async(func, retry_config=cfg)

    assert func.await_count == 1


@pytest.mark.asyncio
async def test_backoff_is_exponential_and_capped():
    func = flaky(4)
    cfg = RetryConfig(max_attempts=5, initial_delay_ms=100, max_delay_ms=300, backoff_factor=2.0, jitter=False)

    with patch("sms_bridge.infra.reliability.retry.asyncio.sleep", new=AsyncMock()) as sleep:
        await retry_async(func, retry_config=cfg)

    assert [c.args[0] for c in sleep.await_args_list] == [0.1, 0.2, 0.3, 0.3]


@pytest.mark.asyncio
async def test_zero_attempts_rejected():
    with pytest.raises(ValueError):
        await retry_async(flaky(0), retry_config=RetryConfig(max_attempts=0))


def test_compute_delay_ms():
    cfg = RetryConfig(initial_delay_ms=500, max_delay_ms=30000, backoff_factor=2.0)

    assert compute_delay_ms(cfg, 1) == 500
    assert compute_delay_ms(cfg, 3) == 2000
    assert compute_delay_ms(cfg, 20) == 30000


def test_jitter_bounds():
    for _ in range(50):
        assert 0 <= FullJitter().apply(100) <= 100
        assert 50 <= EqualJitter().apply(100) <= 100


def test_unknown_jitter_defaults_to_full():
    assert isinstance(get_jitter_strategy("bogus"), FullJitter)
    assert isinstance(get_jitter_strategy("equal"), EqualJitter)
