"""
Bounded polling helper shared by workload restarts, snapshots and jobs.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from man10routine.config.loader import PollingConfig
from man10routine.errors.errors import RoutineError, new_timeout_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def poll_until(
    check: Callable[[], Awaitable[Optional[T]]],
    polling: PollingConfig,
    description: str,
    component: str = "workload",
) -> T:
    """Call `check` until it returns something other than None.

    The first check happens after `initial_wait`. Each check is bounded by
    the time left before `max_wait`. Transient API errors are tolerated up
    to `max_errors` in a row, waiting `error_wait` after each one; any other
    error propagates immediately.

    Args:
        check: Coroutine factory returning None while the condition is unmet
        polling: Polling bounds
        description: What is being waited for, used in messages
        component: Component reported in a timeout error

    Returns:
        The first non-None value returned by `check`

    Raises:
        RoutineError: TIMEOUT once `max_wait` has elapsed, including while a
            check is still pending, or the last API error after too many
            consecutive failures
    """
    loop = asyncio.get_running_loop()
    max_wait = polling.max_wait.total_seconds()
    deadline = loop.time() + max_wait
    consecutive_errors = 0

    def timed_out(cause: Optional[BaseException] = None) -> RoutineError:
        return new_timeout_error(component, "poll", f"{description} not reached within {max_wait:.0f}s", cause) \
            .with_context("max_wait_seconds", max_wait)

    await asyncio.sleep(min(polling.initial_wait.total_seconds(), max_wait))
    while True:
        wait = polling.poll_interval.total_seconds()
        try:
            result = await asyncio.wait_for(check(), max(deadline - loop.time(), 0))
        except asyncio.TimeoutError as e:
            raise timed_out(e)
        except RoutineError as e:
            if not e.retryable:
                raise
            consecutive_errors += 1
            if consecutive_errors >= polling.max_errors:
                logger.error(f"Giving up on {description} after {consecutive_errors} consecutive errors")
                raise
            logger.warning(f"Error while waiting for {description} ({consecutive_errors}/{polling.max_errors}): {e}")
            wait = polling.error_wait.total_seconds()
        else:
            consecutive_errors = 0
            if result is not None:
                return result

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise timed_out()
        await asyncio.sleep(min(wait, remaining))
