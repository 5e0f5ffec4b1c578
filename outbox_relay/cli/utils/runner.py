"""Running relay coroutines from click commands."""

from __future__ import annotations

import asyncio
from functools import wraps
import sys
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from outbox_relay.core.exceptions import RelayError

from .output import status

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

P = ParamSpec("P")
R = TypeVar("R")


def relay_command(failure: str) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, R]]:
    """Run an async command body with ``asyncio.run``.

    A ``RelayError`` escaping the body is printed after ``failure`` and ends
    the command with status 1.

    Usage:
        @db.command()
        @relay_command("Install failed")
        async def install():
            ...
    """

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return asyncio.run(func(*args, **kwargs))
            except RelayError as e:
                status("failed", f"{failure}: {e}")
                sys.exit(1)

        return wrapper

    return decorator
