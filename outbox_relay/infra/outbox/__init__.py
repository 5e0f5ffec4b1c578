"""Outbox watching and delivery engine."""

from __future__ import annotations

from .models import ChangeEvent, ChangeOperation, IdentityKey, OutboxRecord, WatcherPhase, outbox_table
from .orchestrator import AuxiliaryService, RelayOrchestrator, RelayReport, ShutdownOutcome
from .repository import OutboxSource, PostgresOutbox
from .shutdown import ShutdownSignal
from .watcher import OutboxBinding, OutboxWatcher

__all__ = [
    "AuxiliaryService",
    "ChangeEvent",
    "ChangeOperation",
    "IdentityKey",
    "OutboxBinding",
    "OutboxRecord",
    "OutboxSource",
    "OutboxWatcher",
    "PostgresOutbox",
    "RelayOrchestrator",
    "RelayReport",
    "ShutdownOutcome",
    "ShutdownSignal",
    "WatcherPhase",
    "outbox_table",
]
