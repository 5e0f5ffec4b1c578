"""Startup connection attempts for the database and the messaging bus.

Only connecting is retried. Once the relay is running, a failed publish or
query ends its watcher and the row is picked up by the next backlog replay.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, TypeVar

from outbox_relay.core.exceptions import StartupConnectionError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(retry: int, *, initial_delay: float, max_delay: float, jitter: bool = True) -> float:
    """Seconds to wait before the ``retry``-th retry (0-based), doubling up to ``max_delay``."""
    delay = min(initial_delay * 2**retry, max_delay)
    if jitter:
        delay *= random.uniform(0.5, 1.5)
    return delay


async def connect_with_retry(
    connect: Callable[[], Awaitable[T]],
    *,
    target: str,
    attempts: int,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> T:
    """Await ``connect()`` until it succeeds or ``attempts`` calls have failed.

    Args:
        connect: Zero-argument coroutine function opening the connection.
        target: What is being connected to, for logs and the error message.
        attempts: Total number of calls, at least 1.

    Raises:
        StartupConnectionError: Every attempt failed; the last error is chained.
    """
    if attempts < 1:
        msg = f"attempts must be at least 1, got {attempts}"
        raise ValueError(msg)

    attempt = 1
    while True:
        try:
            return await connect()
        except Exception as e:
            if attempt >= attempts:
                logger.error(
                    f"Could not connect to {target}",
                    extra={"target": target, "attempts": attempt, "error": str(e)},
                )
                raise StartupConnectionError(target, attempt, e) from e

            delay = backoff_delay(attempt - 1, initial_delay=initial_delay, max_delay=max_delay, jitter=jitter)
            logger.warning(
                f"Connecting to {target} failed, retrying in {delay:.2f}s ({attempt}/{attempts})",
                extra={
                    "target": target,
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            await asyncio.sleep(delay)
            attempt += 1


__all__ = ["backoff_delay", "connect_with_retry"]
