"""Outbox watcher: backlog replay followed by live tailing.

One watcher owns one or more outbox tables ("bindings"), each with its own
envelope encoder, and a shared publisher. The watcher:

1. Opens a live change subscription on every table
2. Replays each table's backlog in replay order (publish, then delete)
3. Tails all subscriptions in one combined loop until shutdown

Subscriptions are opened before the backlog is read, so a row inserted while
the replay is running is seen either by the scan or by the subscription. Keys
delivered during replay are remembered only until the notifications buffered
during replay have been consumed. A notification for a remembered key is
checked against the table, so a key reused after delivery is still delivered.

Per-record failures are split the same way everywhere:
- undecodable row or notification: logged and skipped
- encoder failure: logged, row left in place, next record
- publish failure: ``DeliveryError``, fatal
- fetch/delete failure or closed subscription: fatal
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any

from outbox_relay.core.exceptions import (
    DeliveryError,
    EncodeError,
    OutboxReadError,
    PublishError,
    StreamClosedError,
)
from outbox_relay.infra.outbox.models import ChangeOperation, WatcherPhase

if TYPE_CHECKING:
    from collections.abc import Sequence

    from outbox_relay.infra.messaging.envelopes import EnvelopeEncoder
    from outbox_relay.infra.messaging.publisher import Publisher
    from outbox_relay.infra.outbox.models import IdentityKey, OutboxRecord
    from outbox_relay.infra.outbox.repository import ChangeStream, OutboxSource
    from outbox_relay.infra.outbox.shutdown import ShutdownSignal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboxBinding:
    """One outbox table watched by a watcher, with the encoder for its kind."""

    kind: str
    source: OutboxSource
    encoder: EnvelopeEncoder


@dataclass
class WatcherStats:
    replayed: int = 0
    delivered_live: int = 0
    skipped: int = 0
    ignored: int = 0
    duplicates: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "replayed": self.replayed,
            "delivered_live": self.delivered_live,
            "skipped": self.skipped,
            "ignored": self.ignored,
            "duplicates": self.duplicates,
        }


@dataclass
class _Tail:
    binding: OutboxBinding
    stream: ChangeStream
    seen: set[IdentityKey] = field(default_factory=set)
    buffered: int = 0

    def start_live(self) -> None:
        """Mark the end of replay: only notifications already buffered can repeat it."""
        self.buffered = self.stream.pending
        if not self.buffered:
            self.seen.clear()

    def consumed(self) -> None:
        if self.buffered:
            self.buffered -= 1
            if not self.buffered:
                self.seen.clear()


_END = object()


async def _next_item(stream: ChangeStream) -> Any:
    try:
        return await anext(stream)
    except StopAsyncIteration:
        return _END


class OutboxWatcher:
    """Delivers the records of one or more outbox tables.

    Attributes:
        name: Watcher name used in logs.
        phase: Current lifecycle phase.
        stats: Counters for the current run.
    """

    def __init__(
        self,
        name: str,
        bindings: Sequence[OutboxBinding],
        publisher: Publisher,
        shutdown: ShutdownSignal,
    ) -> None:
        if not bindings:
            msg = f"Watcher {name!r} has no outbox bindings"
            raise ValueError(msg)
        self.name = name
        self.bindings = list(bindings)
        self.phase = WatcherPhase.REPLAYING_BACKLOG
        self.stats = WatcherStats()
        self._publisher = publisher
        self._shutdown = shutdown

    @property
    def kinds(self) -> list[str]:
        return [binding.kind for binding in self.bindings]

    def _extra(self, binding: OutboxBinding, operation: str, **fields: Any) -> dict[str, Any]:
        return {"watcher": self.name, "kind": binding.kind, "operation": operation, **fields}

    async def run(self) -> None:
        """Replay every backlog, then tail until shutdown.

        Returns normally only when shutdown was requested.

        Raises:
            DeliveryError: A record could not be published.
            StorageError: A record could not be fetched or deleted, or a
                subscription could not be opened.
            StreamClosedError: A live subscription ended.
        """
        logger.info("Outbox watcher starting", extra={"watcher": self.name, "kinds": self.kinds})
        try:
            async with contextlib.AsyncExitStack() as stack:
                tails = []
                for binding in self.bindings:
                    stream = await stack.enter_async_context(binding.source.subscribe())
                    tails.append(_Tail(binding=binding, stream=stream))

                self.phase = WatcherPhase.REPLAYING_BACKLOG
                for tail in tails:
                    if self._shutdown.is_requested:
                        break
                    tail.seen = await self.replay(tail.binding)

                if not self._shutdown.is_requested:
                    self.phase = WatcherPhase.TAILING_LIVE
                    for tail in tails:
                        tail.start_live()
                    logger.info("Tailing live changes", extra={"watcher": self.name, "kinds": self.kinds})
                    await self._tail(tails)

                self.phase = WatcherPhase.DRAINING
                logger.info("Outbox watcher draining", extra={"watcher": self.name})
        finally:
            self.phase = WatcherPhase.STOPPED
            logger.info(
                "Outbox watcher stopped",
                extra={"watcher": self.name, **self.stats.as_dict()},
            )

    async def replay(self, binding: OutboxBinding) -> set[IdentityKey]:
        """Deliver every row currently in the table, in replay order.

        Returns:
            Identity keys delivered (published and deleted) by this replay.
        """
        delivered: set[IdentityKey] = set()
        logger.info("Replaying outbox backlog", extra=self._extra(binding, "replay"))

        async with contextlib.aclosing(binding.source.scan()) as rows:
            async for raw in rows:
                if self._shutdown.is_requested:
                    logger.info("Backlog replay interrupted by shutdown", extra=self._extra(binding, "replay"))
                    break
                try:
                    record = binding.source.decode_row(raw)
                except OutboxReadError as e:
                    self.stats.skipped += 1
                    logger.warning(
                        "Skipping undecodable backlog row",
                        extra=self._extra(binding, "replay", error=e.detail),
                    )
                    continue

                if await self._deliver(binding, record, "replay"):
                    delivered.add(record.identity)
                    self.stats.replayed += 1

        logger.info(
            "Backlog replay complete",
            extra=self._extra(binding, "replay", delivered=len(delivered)),
        )
        return delivered

    async def _tail(self, tails: list[_Tail]) -> None:
        reads: dict[asyncio.Task[Any], _Tail] = {}

        def arm(tail: _Tail) -> None:
            reads[asyncio.create_task(_next_item(tail.stream))] = tail

        for tail in tails:
            arm(tail)
        shutdown_wait = asyncio.create_task(self._shutdown.wait())

        try:
            while not self._shutdown.is_requested:
                done, _ = await asyncio.wait([*reads, shutdown_wait], return_when=asyncio.FIRST_COMPLETED)
                if shutdown_wait in done:
                    break

                for task in [t for t in reads if t in done]:
                    tail = reads.pop(task)
                    try:
                        raw = task.result()
                    except OutboxReadError as e:
                        logger.warning(
                            "Change stream read error",
                            extra=self._extra(tail.binding, "tail", error=e.detail),
                        )
                    else:
                        if raw is _END:
                            logger.error("Change stream closed", extra=self._extra(tail.binding, "tail"))
                            raise StreamClosedError(tail.binding.kind)
                        await self.handle_change(tail.binding, raw, tail.seen)
                    tail.consumed()

                    if self._shutdown.is_requested:
                        break
                    arm(tail)
        finally:
            pending = [*reads, shutdown_wait]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def handle_change(self, binding: OutboxBinding, raw: Any, seen: set[IdentityKey]) -> bool:
        """Handle one live notification.

        Returns:
            True if a record was delivered.
        """
        try:
            event = binding.source.decode_change(raw)
        except OutboxReadError as e:
            self.stats.skipped += 1
            logger.warning(
                "Skipping undecodable change notification",
                extra=self._extra(binding, "tail", error=e.detail),
            )
            return False

        if event.operation is not ChangeOperation.INSERT:
            self.stats.ignored += 1
            logger.debug(
                "Ignoring non-insert change",
                extra=self._extra(binding, "tail", change=event.operation.value),
            )
            return False

        record = event.document
        key = record.identity if record is not None else event.key
        if key is None:
            self.stats.skipped += 1
            logger.warning("Insert notification without identity key", extra=self._extra(binding, "tail"))
            return False

        replayed = key in seen
        if replayed:
            # The key may have been reused since replay; only the table can tell.
            seen.discard(key)
            record = None

        if record is None:
            try:
                record = await binding.source.fetch(key)
            except OutboxReadError as e:
                self.stats.skipped += 1
                logger.warning(
                    "Skipping unreadable outbox record",
                    extra=self._extra(binding, "fetch", identity=str(key), error=e.detail),
                )
                return False
            if record is None:
                if replayed:
                    self.stats.duplicates += 1
                    logger.debug(
                        "Dropping notification for record delivered during replay",
                        extra=self._extra(binding, "tail", identity=str(key)),
                    )
                else:
                    logger.debug(
                        "Outbox record already gone",
                        extra=self._extra(binding, "fetch", identity=str(key)),
                    )
                return False

        delivered = await self._deliver(binding, record, "tail")
        if delivered:
            self.stats.delivered_live += 1
        return delivered

    async def _deliver(self, binding: OutboxBinding, record: OutboxRecord, operation: str) -> bool:
        """Encode, publish, then delete one record.

        Returns:
            False if the record could not be encoded and was left in place.
        """
        key = record.identity
        try:
            envelope = binding.encoder.encode(record)
        except EncodeError as e:
            self.stats.skipped += 1
            logger.error(
                "Could not encode outbox record, leaving it for replay",
                extra=self._extra(binding, operation, identity=str(key), error=e.detail),
            )
            return False

        try:
            await self._publisher.publish(envelope.destination, envelope.body)
        except PublishError as e:
            logger.error(
                "Publish failed, stopping watcher",
                extra=self._extra(
                    binding, operation, identity=str(key), destination=envelope.destination, error=e.detail
                ),
            )
            raise DeliveryError(binding.kind, key, envelope.destination) from e

        await binding.source.delete(key)
        logger.debug(
            "Outbox record delivered",
            extra=self._extra(binding, operation, identity=str(key), destination=envelope.destination),
        )
        return True


__all__ = ["OutboxBinding", "OutboxWatcher", "WatcherStats"]
