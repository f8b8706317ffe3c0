"""
Unit tests for the retry/backoff utilities.
"""
from unittest.mock import AsyncMock, patch

import pytest

from pushgate.core.retry import (
    RETRY_HOUSEKEEPING,
    RETRY_PUSH_SEND,
    RetryConfig,
    calculate_delay,
    retry_async,
)
from pushgate.services.push.exceptions import RateLimited, TransientNetworkError

SLEEP = "pushgate.core.retry.asyncio.sleep"


class TestRetryConfig:

    def test_defaults(self):
        config = RetryConfig()

        assert config.max_attempts == 3
        assert config.base_delay == 1.0
        assert config.max_delay == 30.0
        assert config.jitter is True

    def test_push_send_policy(self):
        assert RETRY_PUSH_SEND.max_attempts == 3
        assert RETRY_PUSH_SEND.base_delay == 2.0

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryConfig(max_attempts=0)


class TestCalculateDelay:
    """Test exponential backoff calculation"""

    def test_exponential_schedule(self):
        config = RetryConfig(base_delay=2.0, max_delay=30.0, jitter=False)

        assert [calculate_delay(n, config) for n in range(5)] == [2.0, 4.0, 8.0, 16.0, 30.0]

    def test_jitter_within_25_percent(self):
        config = RetryConfig(base_delay=4.0, jitter=True)

        for _ in range(50):
            assert 3.0 <= calculate_delay(0, config) <= 5.0

    def test_retry_after_replaces_schedule(self):
        config = RetryConfig(base_delay=2.0, jitter=False)

        assert calculate_delay(0, config, retry_after=15) == 15.0

    def test_retry_after_capped(self):
        config = RetryConfig(max_retry_after=60.0)

        assert calculate_delay(0, config, retry_after=3600) == 60.0


class TestRetryAsync:
    """Test the generic async retry helper"""

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        func = AsyncMock(return_value="ok")

        assert await retry_async(func, "arg", config=RETRY_HOUSEKEEPING) == "ok"
        func.assert_awaited_once_with("arg")

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        func = AsyncMock(side_effect=[TransientNetworkError("reset"), "ok"])
        config = RetryConfig(max_attempts=3, base_delay=1.0, jitter=False)

        with patch(SLEEP, new_callable=AsyncMock) as sleep:
            result = await retry_async(func, config=config)

        assert result == "ok"
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    async def test_raises_last_exception(self):
        func = AsyncMock(side_effect=TransientNetworkError("reset"))
        config = RetryConfig(max_attempts=2, jitter=False)

        with patch(SLEEP, new_callable=AsyncMock):
            with pytest.raises(TransientNetworkError):
                await retry_async(func, config=config, operation_name="receipts")

        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self):
        func = AsyncMock(side_effect=KeyError("bad"))
        config = RetryConfig(max_attempts=3, retryable_exceptions=(TransientNetworkError,))

        with pytest.raises(KeyError):
            await retry_async(func, config=config)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_honours_retry_after(self):
        func = AsyncMock(side_effect=[RateLimited("slow down", "expo", retry_after=7), "ok"])
        config = RetryConfig(max_attempts=2, jitter=False)

        with patch(SLEEP, new_callable=AsyncMock) as sleep:
            await retry_async(func, config=config)

        sleep.assert_awaited_once_with(7.0)
