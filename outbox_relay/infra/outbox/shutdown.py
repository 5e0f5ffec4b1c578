"""Shared shutdown signal for the relay.

Two kinds of callers stop the relay:

- Internal ones (a failed or exited watcher) call ``request``. Repeating it
  never escalates, so several watchers failing together still get a full drain.
- External ones (SIGINT/SIGTERM) go through ``interrupt``: the first one starts
  the drain, the second one forces the orchestrator to stop waiting.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class ShutdownSignal:
    """Broadcast-style shutdown flag shared by the orchestrator and watchers.

    Attributes:
        requested: Set once shutdown has been asked for.
        forced: Set by a second external interrupt or by ``force``.
        reason: Reason given with the first request.
        interrupts: Number of external interrupts received.
    """

    def __init__(self) -> None:
        self.requested = asyncio.Event()
        self.forced = asyncio.Event()
        self.reason: str | None = None
        self.interrupts = 0
        self._installed: list[tuple[asyncio.AbstractEventLoop, signal.Signals]] = []

    @property
    def is_requested(self) -> bool:
        return self.requested.is_set()

    @property
    def is_forced(self) -> bool:
        return self.forced.is_set()

    def request(self, reason: str = "requested") -> None:
        """Ask for a graceful shutdown. Later calls are no-ops."""
        if self.requested.is_set():
            logger.debug("Shutdown already requested", extra={"reason": reason, "first_reason": self.reason})
            return
        self.reason = reason
        logger.info("Shutdown requested", extra={"reason": reason})
        self.requested.set()

    def interrupt(self, reason: str = "interrupt") -> None:
        """External interrupt: drain on the first, force on the second."""
        self.interrupts += 1
        if self.interrupts > 1:
            self.force(reason)
            return
        self.request(reason)

    def force(self, reason: str = "forced") -> None:
        """Request shutdown and skip the drain in one step."""
        self.request(reason)
        if not self.forced.is_set():
            logger.warning("Forced shutdown requested", extra={"reason": reason})
            self.forced.set()

    async def wait(self) -> None:
        await self.requested.wait()

    def install(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
    ) -> None:
        """Route OS signals to ``interrupt`` on the given (or running) loop."""
        loop = loop or asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, self.interrupt, sig.name)
            self._installed.append((loop, sig))

    def uninstall(self) -> None:
        for loop, sig in self._installed:
            loop.remove_signal_handler(sig)
        self._installed.clear()


__all__ = ["DEFAULT_SIGNALS", "ShutdownSignal"]
