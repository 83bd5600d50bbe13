"""Fixed-interval retry loop shared by the resolver and the downloader."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from goupdate.deadline import Deadline
from goupdate.errors import DeadlineExceededError, PollTimeoutError, TransientError
from goupdate.logging import get_logger

log = get_logger("goupdate.poller")

# Retry policy used for every network fetch
DEFAULT_INTERVAL = 3.0
DEFAULT_TIMEOUT = 60.0


async def poll_until(
    condition: Callable[[], Awaitable[bool]],
    *,
    interval: float = DEFAULT_INTERVAL,
    timeout: float = DEFAULT_TIMEOUT,
    immediate: bool = True,
    deadline: Deadline | None = None,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
    operation: str = "poll",
) -> None:
    """Run ``condition`` every ``interval`` seconds until it returns True.

    Exceptions listed in ``retry_on`` count as a failed attempt and are
    remembered; anything else propagates immediately. A running attempt is
    never interrupted: the deadline is checked before each attempt and while
    sleeping between attempts.

    Raises:
        PollTimeoutError: ``timeout`` elapsed without a successful attempt.
            ``last_error`` holds the last retryable failure, if any.
        DeadlineExceededError: ``deadline`` expired or was cancelled first.
    """
    budget_end = time.monotonic() + timeout
    last_error: BaseException | None = None
    attempt = 0

    if not immediate:
        await _sleep(interval, deadline, operation)

    while True:
        if deadline is not None:
            deadline.check(operation)

        attempt += 1
        try:
            if await condition():
                if attempt > 1:
                    log.debug("poll_succeeded", operation=operation, attempts=attempt)
                return
        except retry_on as exc:
            last_error = exc
            log.debug("poll_attempt_failed", operation=operation, attempt=attempt, error=str(exc))

        remaining = budget_end - time.monotonic()
        if remaining <= 0:
            raise PollTimeoutError(operation, timeout, last_error)

        await _sleep(min(interval, remaining), deadline, operation)

        if time.monotonic() >= budget_end:
            raise PollTimeoutError(operation, timeout, last_error)


async def _sleep(seconds: float, deadline: Deadline | None, operation: str) -> None:
    if deadline is None:
        await asyncio.sleep(seconds)
        return
    if await deadline.wait(seconds):
        raise DeadlineExceededError(operation)
