"""In-memory test doubles for the outbox engine.

``InMemoryOutbox`` implements the ``OutboxSource`` protocol and
``RecordingPublisher`` the ``Publisher`` protocol, so watchers and the
orchestrator can be exercised without PostgreSQL or a message broker.

Usage:
    journal: list[tuple[str, str]] = []
    outbox = InMemoryOutbox("messages_outbox", journal=journal)
    publisher = RecordingPublisher(journal=journal)

    outbox.insert("chat-1", 5, b"hello")
    watcher = OutboxWatcher("messages", [OutboxBinding("messages", outbox, DirectRelayEncoder())], publisher, shutdown)

    # journal == [("publish", "chat.chat-1"), ("delete", "(chat-1, 5)")]

Both doubles can share a journal so tests can check the relative order of
publishes and deletes.

Pattern: Protocol-based test double (no mocking library needed)
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from outbox_relay.core.exceptions import OutboxReadError, PublishError, StorageError
from outbox_relay.infra.outbox.models import ChangeEvent, ChangeOperation, IdentityKey, OutboxRecord

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

_BASE_TIME = datetime(2024, 1, 1, tzinfo=UTC)
_CLOSED = object()


class _QueueStream:
    def __init__(self, queue: asyncio.Queue[Any]) -> None:
        self._queue = queue

    def __aiter__(self) -> _QueueStream:
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class InMemoryOutbox:
    """Outbox table held in a dict, with a notification feed.

    Attributes:
        rows: Stored rows keyed by identity.
        deleted: Keys deleted, in order.
        fetched: Keys fetched, in order.
        full_document: Include the full row in insert notifications.
        fail_delete: Raise StorageError on delete.
    """

    def __init__(
        self,
        name: str = "messages_outbox",
        *,
        journal: list[tuple[str, str]] | None = None,
        full_document: bool = False,
        after_scan_row: Callable[[InMemoryOutbox], Awaitable[None]] | None = None,
    ) -> None:
        self._name = name
        self.rows: dict[IdentityKey, dict[str, Any]] = {}
        self.corrupt_rows: list[Any] = []
        self.deleted: list[IdentityKey] = []
        self.fetched: list[IdentityKey] = []
        self.journal = journal if journal is not None else []
        self.full_document = full_document
        self.after_scan_row = after_scan_row
        self.fail_delete = False
        self.scan_count = 0
        self._subscribers: list[asyncio.Queue[Any]] = []
        self._clock = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def subscribed(self) -> bool:
        return bool(self._subscribers)

    # ──────────────────────────────────────────────────────
    # Writer side
    # ──────────────────────────────────────────────────────

    def insert(
        self,
        partition_key: str,
        sequence_number: int,
        payload: bytes,
        *,
        created_at: datetime | None = None,
        epoch: int | None = None,
        notify: bool = True,
    ) -> IdentityKey:
        """Store a row and, unless ``notify`` is False, announce it to subscribers."""
        if created_at is None:
            self._clock += 1
            created_at = _BASE_TIME + timedelta(seconds=self._clock)
        row = {
            "partition_key": partition_key,
            "sequence_number": sequence_number,
            "epoch": epoch,
            "payload": payload,
            "created_at": created_at,
        }
        key = IdentityKey(partition_key, sequence_number, epoch)
        self.rows[key] = row
        if notify:
            self.notify_change("INSERT", row)
        return key

    def insert_corrupt(self, raw: Any) -> None:
        """Store a row that cannot be decoded; it is scanned before all others."""
        self.corrupt_rows.append(raw)

    def notify_change(self, op: str, row: dict[str, Any] | None = None) -> None:
        """Send a notification shaped like the database trigger's."""
        body: dict[str, Any] = {"op": op}
        if row is not None:
            body["row"] = dict(row) if self.full_document else {k: v for k, v in row.items() if k != "payload"}
        self.notify(body)

    def notify(self, raw: Any) -> None:
        """Push a raw item (or an exception to raise) to every subscriber."""
        for queue in self._subscribers:
            queue.put_nowait(raw)

    def close_streams(self) -> None:
        """End every open subscription."""
        for queue in self._subscribers:
            queue.put_nowait(_CLOSED)

    # ──────────────────────────────────────────────────────
    # OutboxSource
    # ──────────────────────────────────────────────────────

    async def scan(self) -> AsyncIterator[Any]:
        self.scan_count += 1
        snapshot = list(self.corrupt_rows) + sorted(
            self.rows.values(),
            key=lambda r: (r["created_at"], r["partition_key"], r["sequence_number"], r["epoch"] or 0),
        )
        for raw in snapshot:
            yield raw
            if self.after_scan_row is not None:
                await self.after_scan_row(self)

    def decode_row(self, raw: Any) -> OutboxRecord:
        try:
            return OutboxRecord(
                payload=bytes(raw["payload"]),
                created_at=raw["created_at"],
                sequence_number=int(raw["sequence_number"]),
                partition_key=str(raw["partition_key"]),
                epoch=raw.get("epoch"),
            )
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Undecodable row in {self.name}: {e}"
            raise OutboxReadError(msg) from e

    @contextlib.asynccontextmanager
    async def subscribe(self) -> AsyncIterator[_QueueStream]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self._subscribers.append(queue)
        try:
            yield _QueueStream(queue)
        finally:
            self._subscribers.remove(queue)

    def decode_change(self, raw: Any) -> ChangeEvent:
        try:
            operation = ChangeOperation.parse(raw["op"])
            if operation is not ChangeOperation.INSERT:
                return ChangeEvent(operation=operation)
            row = raw["row"]
            key = IdentityKey(str(row["partition_key"]), int(row["sequence_number"]), row.get("epoch"))
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Undecodable change notification on {self.name}: {e}"
            raise OutboxReadError(msg) from e
        document = self.decode_row(row) if "payload" in row else None
        return ChangeEvent(operation=operation, key=key, document=document)

    async def fetch(self, key: IdentityKey) -> OutboxRecord | None:
        self.fetched.append(key)
        row = self.rows.get(key)
        return self.decode_row(row) if row is not None else None

    async def delete(self, key: IdentityKey) -> int:
        if self.fail_delete:
            msg = f"Delete of {key} from {self.name} failed"
            raise StorageError(msg)
        self.journal.append(("delete", str(key)))
        self.deleted.append(key)
        return 1 if self.rows.pop(key, None) is not None else 0


class RecordingPublisher:
    """Publisher that records every attempt.

    Attributes:
        attempts: Every (destination, body) passed to publish.
        published: Only the attempts that succeeded.
        fail: Make every publish raise PublishError.
        fail_destinations: Destinations whose publishes fail.
        gate: If set, publishes wait for this event before completing.
    """

    def __init__(self, *, journal: list[tuple[str, str]] | None = None, fail: bool = False) -> None:
        self.journal = journal if journal is not None else []
        self.attempts: list[tuple[str, bytes]] = []
        self.published: list[tuple[str, bytes]] = []
        self.fail = fail
        self.fail_destinations: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.in_flight = asyncio.Event()

    @classmethod
    def failing(cls, **kwargs: Any) -> RecordingPublisher:
        return cls(fail=True, **kwargs)

    async def publish(self, destination: str, body: bytes) -> None:
        self.attempts.append((destination, body))
        self.in_flight.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail or destination in self.fail_destinations:
            raise PublishError(destination, ConnectionError("bus unavailable"))
        self.journal.append(("publish", destination))
        self.published.append((destination, body))


__all__ = ["InMemoryOutbox", "RecordingPublisher"]
