"""Pytest fixtures for outbox engine testing.

Fixtures:
    - journal: shared list recording publishes and deletes in order
    - messages_outbox / group_outbox: in-memory outbox tables
    - publisher: RecordingPublisher writing to the journal
    - shutdown: fresh ShutdownSignal
    - direct_binding / broadcast_binding: outbox bindings with their encoders

Helpers:
    - eventually(): await a condition with a timeout
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from outbox_relay.infra.messaging.envelopes import (
    BroadcastEnvelopeEncoder,
    CentrifugoEventType,
    DirectRelayEncoder,
)
from outbox_relay.infra.outbox.shutdown import ShutdownSignal
from outbox_relay.infra.outbox.testing import InMemoryOutbox, RecordingPublisher
from outbox_relay.infra.outbox.watcher import OutboxBinding

if TYPE_CHECKING:
    from collections.abc import Callable


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Wait until ``predicate()`` is true, failing the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def journal() -> list[tuple[str, str]]:
    return []


@pytest.fixture
def messages_outbox(journal) -> InMemoryOutbox:
    return InMemoryOutbox("messages_outbox", journal=journal)


@pytest.fixture
def group_outbox(journal) -> InMemoryOutbox:
    return InMemoryOutbox("group_operations_outbox", journal=journal)


@pytest.fixture
def publisher(journal) -> RecordingPublisher:
    return RecordingPublisher(journal=journal)


@pytest.fixture
def shutdown() -> ShutdownSignal:
    return ShutdownSignal()


@pytest.fixture
def direct_binding(messages_outbox) -> OutboxBinding:
    return OutboxBinding(kind="messages", source=messages_outbox, encoder=DirectRelayEncoder(prefix="chat"))


@pytest.fixture
def broadcast_binding(group_outbox) -> OutboxBinding:
    return OutboxBinding(
        kind="group_operations",
        source=group_outbox,
        encoder=BroadcastEnvelopeEncoder(
            subject="centrifugo",
            namespace="messages",
            event_type=CentrifugoEventType.GENERIC_CHANGE,
        ),
    )
