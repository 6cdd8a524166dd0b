"""Deadline helper for outbound calls."""

import asyncio
from typing import Awaitable, TypeVar

from indexnow_worker.errors import ExternalTimeoutError

T = TypeVar("T")


async def run_with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    """
    Await ``awaitable`` for at most ``seconds``.

    Raises:
        ExternalTimeoutError: deadline exceeded (retryable)
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise ExternalTimeoutError(
            f"{operation} timed out after {seconds:.0f}s",
            details={"operation": operation, "timeout_seconds": seconds},
        ) from e
