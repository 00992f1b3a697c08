"""
Unit Tests for with_timeout and TimeoutBudget.
"""

import asyncio

import pytest

from signbot.core.exceptions import OperationTimeoutError
from signbot.core.resilience.timeout import TimeoutBudget, with_timeout


@pytest.mark.unit
class TestWithTimeout:
    async def test_returns_result_in_time(self):
        async def fast():
            return "done"

        assert await with_timeout(fast(), 1.0, "fast") == "done"

    async def test_raises_operation_timeout(self):
        with pytest.raises(OperationTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(1), 0.01, "gemini")

        assert exc_info.value.operation == "gemini"
        assert exc_info.value.timeout == 0.01
        assert exc_info.value.status_code == 504

    async def test_cancels_the_operation_by_default(self):
        cancelled = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(1)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(OperationTimeoutError):
            await with_timeout(slow(), 0.01)
        assert cancelled.is_set()

    async def test_shielded_operation_keeps_running(self):
        finished = asyncio.Event()

        async def slow():
            await asyncio.sleep(0.05)
            finished.set()

        with pytest.raises(OperationTimeoutError):
            await with_timeout(slow(), 0.01, cancel=False)

        await asyncio.wait_for(finished.wait(), 1.0)


@pytest.mark.unit
class TestTimeoutBudget:
    def test_effective_timeout_is_min_of_requested_and_remaining(self, fake_clock):
        budget = TimeoutBudget(240, clock=fake_clock)

        assert budget.effective_timeout(60) == 60
        fake_clock.advance(200)
        assert budget.effective_timeout(60) == pytest.approx(40)

    def test_exhausted_budget_raises(self, fake_clock):
        budget = TimeoutBudget(10, clock=fake_clock)
        fake_clock.advance(9.5)

        with pytest.raises(OperationTimeoutError):
            budget.effective_timeout(5, min_threshold=1.0, operation="database")

    def test_expired(self, fake_clock):
        budget = TimeoutBudget(1, clock=fake_clock)
        assert not budget.is_expired()
        fake_clock.advance(1)
        assert budget.is_expired()
        assert budget.remaining() == 0
