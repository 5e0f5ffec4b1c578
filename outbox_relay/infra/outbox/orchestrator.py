"""Relay orchestrator: runs every watcher and bounds the shutdown drain.

Any watcher failing stops the whole relay (fail-fast). Once shutdown has been
requested the orchestrator waits at most ``shutdown_timeout`` seconds for the
watchers to drain. Only a forced shutdown (a second OS signal) ends the wait
early; watcher failures never force it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from outbox_relay.infra.outbox.shutdown import ShutdownSignal
    from outbox_relay.infra.outbox.watcher import OutboxWatcher

logger = logging.getLogger(__name__)


class ShutdownOutcome(str, Enum):
    GRACEFUL = "graceful"
    TIMED_OUT = "timed_out"
    FORCED = "forced"


@dataclass(frozen=True)
class WatcherFailure:
    watcher: str
    error: BaseException

    def __str__(self) -> str:
        return f"{self.watcher}: {type(self.error).__name__}: {self.error}"


@dataclass
class RelayReport:
    """How the relay stopped."""

    outcome: ShutdownOutcome
    failures: list[WatcherFailure] = field(default_factory=list)
    reason: str | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        """True only for a graceful stop without watcher failures."""
        return self.outcome is ShutdownOutcome.GRACEFUL and not self.failures


@dataclass(frozen=True)
class AuxiliaryService:
    """A non-critical task run next to the watchers (e.g. the health server)."""

    name: str
    run: Callable[[], Awaitable[Any]]


class RelayOrchestrator:
    """Owns the watchers of one relay process.

    Args:
        watchers: Watchers to run concurrently.
        shutdown: Shared shutdown signal.
        shutdown_timeout: Seconds to wait for the drain once shutdown starts.
        services: Auxiliary services whose failure is logged but not fatal.
    """

    def __init__(
        self,
        watchers: Sequence[OutboxWatcher],
        shutdown: ShutdownSignal,
        *,
        shutdown_timeout: float = 10.0,
        services: Sequence[AuxiliaryService] = (),
    ) -> None:
        self.watchers = list(watchers)
        self.services = list(services)
        self.shutdown = shutdown
        self.shutdown_timeout = shutdown_timeout
        self.failures: list[WatcherFailure] = []

    def _watcher_done(self, watcher: OutboxWatcher, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.failures.append(WatcherFailure(watcher.name, error))
            logger.error(
                "Outbox watcher failed, shutting down relay",
                extra={"watcher": watcher.name, "error": str(error), "error_type": type(error).__name__},
                exc_info=error,
            )
            self.shutdown.request(f"watcher {watcher.name} failed")
        elif not self.shutdown.is_requested:
            logger.warning("Outbox watcher exited unexpectedly", extra={"watcher": watcher.name})
            self.shutdown.request(f"watcher {watcher.name} exited")

    def _service_done(self, service: AuxiliaryService, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Auxiliary service failed",
                extra={"service": service.name, "error": str(error)},
                exc_info=error,
            )

    async def run(self) -> RelayReport:
        """Run until shutdown and report how the relay stopped."""
        started = time.monotonic()
        tasks: list[asyncio.Task[Any]] = []

        for watcher in self.watchers:
            task = asyncio.create_task(watcher.run(), name=f"watcher:{watcher.name}")
            task.add_done_callback(lambda t, w=watcher: self._watcher_done(w, t))
            tasks.append(task)
        for service in self.services:
            task = asyncio.create_task(service.run(), name=f"service:{service.name}")
            task.add_done_callback(lambda t, s=service: self._service_done(s, t))
            tasks.append(task)

        logger.info(
            "Relay started",
            extra={"watchers": [w.name for w in self.watchers], "services": [s.name for s in self.services]},
        )

        await self.shutdown.wait()
        logger.info(
            "Relay draining",
            extra={"reason": self.shutdown.reason, "shutdown_timeout": self.shutdown_timeout},
        )

        outcome = await self._drain(tasks)
        report = RelayReport(
            outcome=outcome,
            failures=list(self.failures),
            reason=self.shutdown.reason,
            duration=time.monotonic() - started,
        )
        self._log_report(report)
        return report

    async def _drain(self, tasks: list[asyncio.Task[Any]]) -> ShutdownOutcome:
        if not tasks:
            return ShutdownOutcome.GRACEFUL
        if self.shutdown.is_forced:
            outcome = ShutdownOutcome.FORCED
        else:
            all_done = asyncio.ensure_future(asyncio.wait(tasks))
            forced = asyncio.create_task(self.shutdown.forced.wait())
            done, _ = await asyncio.wait(
                [all_done, forced],
                timeout=self.shutdown_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if all_done in done:
                outcome = ShutdownOutcome.GRACEFUL
            elif forced in done:
                outcome = ShutdownOutcome.FORCED
            else:
                outcome = ShutdownOutcome.TIMED_OUT
            all_done.cancel()
            forced.cancel()

        # Leftovers are cancelled and not awaited.
        for task in tasks:
            if not task.done():
                task.cancel()
        return outcome

    def _log_report(self, report: RelayReport) -> None:
        extra = {
            "outcome": report.outcome.value,
            "failures": [str(f) for f in report.failures],
            "reason": report.reason,
            "duration": round(report.duration, 3),
        }
        if report.outcome is ShutdownOutcome.GRACEFUL:
            logger.info("Relay stopped", extra=extra)
        else:
            logger.warning(f"Relay shutdown {report.outcome.value}", extra=extra)


__all__ = [
    "AuxiliaryService",
    "RelayOrchestrator",
    "RelayReport",
    "ShutdownOutcome",
    "WatcherFailure",
]
