"""Tests for bounded retries around external calls."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from techassist.core.errors import AdapterError, AdapterTimeout, SlotConflict
from techassist.infra.retry import backoff_delay, call_once, call_with_retry


@pytest.fixture
def sleep():
    with patch("techassist.infra.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


def test_backoff_doubles_and_caps():
    assert [backoff_delay(n, 0.5, 4.0) for n in range(5)] == [0.5, 1.0, 2.0, 4.0, 4.0]


class TestCallWithRetry:

    @pytest.mark.asyncio
    async def test_success_first_try(self, sleep):
        operation = AsyncMock(return_value="ok")

        assert await call_with_retry(operation, description="op") == "ok"
        operation.assert_awaited_once()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_retryable_error_retried_with_backoff(self, sleep):
        operation = AsyncMock(side_effect=[
            AdapterError("503", retryable=True),
            AdapterError("503", retryable=True),
            "ok",
        ])

        result = await call_with_retry(
            operation, description="op", attempts=3, base_delay=0.5, max_delay=4.0
        )

        assert result == "ok"
        assert [c.args[0] for c in sleep.await_args_list] == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, sleep):
        operation = AsyncMock(side_effect=AdapterError("503", retryable=True))

        with pytest.raises(AdapterError):
            await call_with_retry(operation, description="op", attempts=3)

        assert operation.await_count == 3
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self, sleep):
        operation = AsyncMock(side_effect=SlotConflict())

        with pytest.raises(SlotConflict):
            await call_with_retry(operation, description="op")

        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_per_attempt(self, sleep):
        async def hang():
            await asyncio.Event().wait()

        with pytest.raises(AdapterTimeout):
            await call_with_retry(hang, description="op", attempts=2, timeout=0.01)


class TestCallOnce:

    @pytest.mark.asyncio
    async def test_not_retried(self):
        operation = AsyncMock(side_effect=AdapterError("503", retryable=True))

        with pytest.raises(AdapterError):
            await call_once(operation, description="op")

        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def hang():
            await asyncio.Event().wait()

        with pytest.raises(AdapterTimeout):
            await call_once(hang, description="op", timeout=0.01)
