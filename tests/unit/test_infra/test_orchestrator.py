"""Tests for RelayOrchestrator: fail-fast watchers and the bounded shutdown drain."""

from __future__ import annotations

import asyncio
import time

import pytest

from fixtures.outbox_fixtures import eventually
from outbox_relay.core.exceptions import DeliveryError
from outbox_relay.infra.messaging.envelopes import DirectRelayEncoder
from outbox_relay.infra.outbox.orchestrator import (
    AuxiliaryService,
    RelayOrchestrator,
    RelayReport,
    ShutdownOutcome,
    WatcherFailure,
)
from outbox_relay.infra.outbox.testing import InMemoryOutbox, RecordingPublisher
from outbox_relay.infra.outbox.watcher import OutboxBinding, OutboxWatcher


class CooperativeWatcher:
    """Runs until shutdown is requested."""

    def __init__(self, name, shutdown):
        self.name = name
        self.shutdown = shutdown
        self.started = asyncio.Event()

    async def run(self):
        self.started.set()
        await self.shutdown.wait()


class StuckWatcher:
    """Never returns on its own, e.g. blocked on a hung publish."""

    def __init__(self, name="stuck"):
        self.name = name
        self.cancelled = False

    async def run(self):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class ExitingWatcher:
    def __init__(self, name="exits"):
        self.name = name

    async def run(self):
        return None


@pytest.mark.unit
class TestRelayReport:
    def test_ok_only_for_graceful_without_failures(self):
        assert RelayReport(ShutdownOutcome.GRACEFUL).ok
        assert not RelayReport(ShutdownOutcome.TIMED_OUT).ok
        assert not RelayReport(ShutdownOutcome.FORCED).ok
        failure = WatcherFailure("messages", RuntimeError("boom"))
        assert not RelayReport(ShutdownOutcome.GRACEFUL, failures=[failure]).ok

    def test_failure_str(self):
        failure = WatcherFailure("messages", RuntimeError("boom"))
        assert str(failure) == "messages: RuntimeError: boom"


@pytest.mark.unit
class TestOrchestratorShutdown:
    @pytest.mark.asyncio
    async def test_graceful_shutdown(self, shutdown):
        watchers = [CooperativeWatcher("a", shutdown), CooperativeWatcher("b", shutdown)]
        orchestrator = RelayOrchestrator(watchers, shutdown, shutdown_timeout=1.0)

        run = asyncio.create_task(orchestrator.run())
        await eventually(lambda: all(w.started.is_set() for w in watchers))
        shutdown.request("SIGTERM")
        report = await asyncio.wait_for(run, timeout=2.0)

        assert report.outcome is ShutdownOutcome.GRACEFUL
        assert report.ok
        assert report.reason == "SIGTERM"
        assert report.failures == []

    @pytest.mark.asyncio
    async def test_drain_is_bounded_by_timeout(self, shutdown):
        stuck = StuckWatcher()
        orchestrator = RelayOrchestrator([stuck], shutdown, shutdown_timeout=0.1)

        run = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.01)
        started = time.monotonic()
        shutdown.request("SIGTERM")
        report = await asyncio.wait_for(run, timeout=2.0)

        assert report.outcome is ShutdownOutcome.TIMED_OUT
        assert not report.ok
        assert time.monotonic() - started < 1.0
        await asyncio.sleep(0.01)
        assert stuck.cancelled

    @pytest.mark.asyncio
    async def test_second_interrupt_forces_shutdown(self, shutdown):
        orchestrator = RelayOrchestrator([StuckWatcher()], shutdown, shutdown_timeout=30.0)

        run = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.01)
        shutdown.interrupt("SIGINT")
        await asyncio.sleep(0.01)
        shutdown.interrupt("SIGINT")
        report = await asyncio.wait_for(run, timeout=2.0)

        assert report.outcome is ShutdownOutcome.FORCED
        assert report.reason == "SIGINT"

    @pytest.mark.asyncio
    async def test_no_watchers_stops_gracefully(self, shutdown):
        orchestrator = RelayOrchestrator([], shutdown)
        shutdown.request("test")

        report = await orchestrator.run()

        assert report.outcome is ShutdownOutcome.GRACEFUL


@pytest.mark.unit
class TestOrchestratorFailFast:
    @pytest.mark.asyncio
    async def test_watcher_failure_stops_the_relay(self, messages_outbox, direct_binding, shutdown):
        messages_outbox.insert("chat-1", 1, b"undeliverable", notify=False)
        failing = OutboxWatcher("messages", [direct_binding], RecordingPublisher.failing(), shutdown)
        healthy = CooperativeWatcher("groups", shutdown)
        orchestrator = RelayOrchestrator([failing, healthy], shutdown, shutdown_timeout=1.0)

        report = await asyncio.wait_for(orchestrator.run(), timeout=2.0)

        assert shutdown.is_requested
        assert report.reason == "watcher messages failed"
        assert report.outcome is ShutdownOutcome.GRACEFUL
        assert not report.ok
        assert len(report.failures) == 1
        assert report.failures[0].watcher == "messages"
        assert isinstance(report.failures[0].error, DeliveryError)
        assert messages_outbox.deleted == []

    @pytest.mark.asyncio
    async def test_simultaneous_failures_drain_without_forcing(self, journal, shutdown):
        publisher = RecordingPublisher.failing(journal=journal)
        publisher.gate = asyncio.Event()
        watchers = []
        for name in ("messages", "groups", "frames"):
            outbox = InMemoryOutbox(f"{name}_outbox", journal=journal)
            outbox.insert(f"{name}-1", 1, b"undeliverable", notify=False)
            watchers.append(
                OutboxWatcher(name, [OutboxBinding(name, outbox, DirectRelayEncoder())], publisher, shutdown)
            )
        orchestrator = RelayOrchestrator(watchers, shutdown, shutdown_timeout=1.0)

        run = asyncio.create_task(orchestrator.run())
        await eventually(lambda: len(publisher.attempts) == 3)
        publisher.gate.set()
        report = await asyncio.wait_for(run, timeout=2.0)

        assert not shutdown.is_forced
        assert report.outcome is ShutdownOutcome.GRACEFUL
        assert sorted(f.watcher for f in report.failures) == ["frames", "groups", "messages"]
        assert all(isinstance(f.error, DeliveryError) for f in report.failures)
        assert journal == []

    @pytest.mark.asyncio
    async def test_unexpected_exit_requests_shutdown(self, shutdown):
        healthy = CooperativeWatcher("groups", shutdown)
        orchestrator = RelayOrchestrator([ExitingWatcher(), healthy], shutdown, shutdown_timeout=1.0)

        report = await asyncio.wait_for(orchestrator.run(), timeout=2.0)

        assert report.reason == "watcher exits exited"
        assert report.failures == []
        assert report.outcome is ShutdownOutcome.GRACEFUL

    @pytest.mark.asyncio
    async def test_auxiliary_service_failure_is_not_fatal(self, shutdown):
        async def broken_service():
            msg = "port in use"
            raise RuntimeError(msg)

        watcher = CooperativeWatcher("messages", shutdown)
        orchestrator = RelayOrchestrator(
            [watcher],
            shutdown,
            shutdown_timeout=1.0,
            services=[AuxiliaryService("health", broken_service)],
        )

        run = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0.05)
        assert not shutdown.is_requested

        shutdown.request("test")
        report = await asyncio.wait_for(run, timeout=2.0)

        assert report.ok
        assert report.failures == []
