"""Deadline and cancellation token threaded through every pipeline call.

A ``Deadline`` is checked from both the event loop and worker threads
(archive extraction, hashing), so expiry is computed from
``time.monotonic()`` and cancellation is a ``threading.Event`` rather than
anything bound to a running loop.
"""

from __future__ import annotations

import asyncio
import math
import threading
import time

from goupdate.errors import DeadlineExceededError

# Upper bound on a single sleep slice while waiting; keeps cancel() responsive.
_WAIT_SLICE = 0.05


class Deadline:
    """An absolute expiry time plus an explicit cancellation signal."""

    def __init__(self, expires_at: float) -> None:
        self._expires_at = expires_at
        self._cancelled = threading.Event()

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        """Deadline expiring ``seconds`` from now."""
        return cls(time.monotonic() + seconds)

    @classmethod
    def never(cls) -> Deadline:
        """Deadline that only ends through ``cancel()``."""
        return cls(math.inf)

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    @property
    def done(self) -> bool:
        return self.cancelled or self.expired

    def check(self, operation: str) -> None:
        """Raise ``DeadlineExceededError`` if the deadline is done."""
        if self.done:
            raise DeadlineExceededError(operation)

    async def wait(self, seconds: float | None = None) -> bool:
        """Sleep up to ``seconds`` (forever if None), waking early when done.

        Returns True if the deadline is done when the wait ends.
        """
        end = math.inf if seconds is None else time.monotonic() + seconds
        while not self.done:
            now = time.monotonic()
            if now >= end:
                return False
            await asyncio.sleep(min(_WAIT_SLICE, end - now, self.remaining()))
        return True
