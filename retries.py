"""
Bounded fixed-delay retries for startup connections (database, queue broker).

A failed attempt is logged and retried after ``delay`` seconds; once
``attempts`` are exhausted the last exception is re-raised to the caller,
which decides whether the process carries on without the dependency.
"""

import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _log_attempt(name: str, attempts: int):
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "%s connection attempt %d/%d failed: %s. Retrying in %ss...",
            name,
            retry_state.attempt_number,
            attempts,
            exc,
            wait,
        )

    return before_sleep


async def retry_fixed(
    name: str,
    func: Callable[[], Awaitable[T]],
    attempts: int,
    delay: float,
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """Await ``func()`` up to ``attempts`` times, sleeping ``delay`` between tries."""
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_fixed(delay),
        retry=retry_if_exception_type(exceptions),
        before_sleep=_log_attempt(name, attempts),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            logger.info(
                "Attempting to connect to %s (attempt %d/%d)...",
                name,
                attempt.retry_state.attempt_number,
                attempts,
            )
            return await func()
