"""
Timeout helpers.

``with_timeout`` races an awaitable against a timer. By default the loser is
cancelled, which is asyncio's cooperative cancellation. With ``cancel=False``
the operation is shielded: it keeps running after the timeout fires and its
eventual result is thrown away. That leaks the work (and any connection it
holds) until it finishes, so only use it for operations that must not be
interrupted halfway.

``TimeoutBudget`` tracks a total budget across chained operations so each
step can size its own timeout from what is left.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from signbot.core.config.constants import REQUEST_TIMEOUT_BUDGET, TIMEOUT_MIN_THRESHOLD
from signbot.core.exceptions import OperationTimeoutError
from signbot.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    operation: str = "operation",
    cancel: bool = True,
) -> T:
    """
    Await ``awaitable`` for at most ``timeout`` seconds.

    Raises:
        OperationTimeoutError: If the timer wins
    """
    if cancel:
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(operation, timeout) from e

    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout)
    except asyncio.TimeoutError as e:
        task.add_done_callback(_discard_result)
        logger.warning(
            "Operation timed out, left running in background",
            stage="TO.1",
            operation=operation,
            timeout=timeout,
        )
        raise OperationTimeoutError(operation, timeout) from e


def _discard_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned operation failed", stage="TO.2", error_type=type(exc).__name__)


class TimeoutBudget:
    """
    Remaining time for a chain of operations.

    Example:
        budget = TimeoutBudget(240)
        await with_timeout(call_ai(), budget.effective_timeout(60), "ai")
    """

    def __init__(self, total: float = REQUEST_TIMEOUT_BUDGET, clock: Callable[[], float] = time.monotonic):
        self.total = total
        self._clock = clock
        self._start = clock()

    def elapsed(self) -> float:
        return self._clock() - self._start

    def remaining(self) -> float:
        return max(0.0, self.total - self.elapsed())

    def is_expired(self) -> bool:
        return self.remaining() <= 0

    def effective_timeout(
        self,
        requested: float,
        min_threshold: float = TIMEOUT_MIN_THRESHOLD,
        operation: str = "operation",
    ) -> float:
        """
        Timeout to use for the next step: the smaller of ``requested`` and
        what is left of the budget.

        Raises:
            OperationTimeoutError: If less than ``min_threshold`` remains
        """
        remaining = self.remaining()
        if remaining < min_threshold:
            raise OperationTimeoutError(operation, self.total)
        return min(requested, remaining)
