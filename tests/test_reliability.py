from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from timelog_bot.services.reliability import RetryExhaustedError, retry_with_backoff


class Transient(Exception):
    def __init__(self, message: str = "", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


@pytest.mark.asyncio
async def test_returns_first_success():
    fn = AsyncMock(return_value="ok")
    assert await retry_with_backoff(fn, retryable=(Transient,)) == "ok"
    fn.assert_awaited_once()


@pytest.mark.asyncio
async def test_retries_then_succeeds_with_exponential_backoff():
    fn = AsyncMock(side_effect=[Transient("a"), Transient("b"), "ok"])
    with patch("timelog_bot.services.reliability.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        assert await retry_with_backoff(fn, retryable=(Transient,), base_backoff_s=0.5) == "ok"

    assert [c.args[0] for c in mock_sleep.await_args_list] == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_after_hint_stretches_the_wait():
    fn = AsyncMock(side_effect=[Transient("slow down", retry_after=3), Transient("again", retry_after=0.1), "ok"])
    with patch("timelog_bot.services.reliability.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        await retry_with_backoff(fn, retryable=(Transient,), base_backoff_s=0.5)

    assert [c.args[0] for c in mock_sleep.await_args_list] == [3.0, 1.0]


@pytest.mark.asyncio
async def test_exhaustion_wraps_last_error():
    fn = AsyncMock(side_effect=Transient("still down"))
    with pytest.raises(RetryExhaustedError) as excinfo:
        await retry_with_backoff(fn, retryable=(Transient,), max_attempts=3, base_backoff_s=0)

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, Transient)
    assert fn.await_count == 3


@pytest.mark.asyncio
async def test_non_retryable_propagates_immediately():
    fn = AsyncMock(side_effect=ValueError("bad input"))
    with pytest.raises(ValueError):
        await retry_with_backoff(fn, retryable=(Transient,))
    fn.assert_awaited_once()
