"""Shared utilities for goupdate."""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog


@asynccontextmanager
async def timed_stage(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager that measures and logs the duration of a pipeline stage.

    Usage::

        async with timed_stage("download", log=log, version=v) as timing:
            await downloader.download(deadline, v)
        print(timing["elapsed_ms"])

    The stage is logged as ``<name>_completed`` on success and
    ``<name>_failed`` (with the error) when the block raises; the exception
    is always re-raised.

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    except Exception as exc:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.error(f"{name}_failed", duration_ms=result["elapsed_ms"], error=str(exc), **extra)
        raise
    result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
    if log:
        log.info(f"{name}_completed", duration_ms=result["elapsed_ms"], **extra)
