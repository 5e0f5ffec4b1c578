"""PostgreSQL access for one outbox table.

Provides the four operations a watcher needs:
- Streaming the backlog in replay order
- Subscribing to live change notifications (LISTEN/NOTIFY)
- Fetching a row by identity key
- Deleting a delivered row by identity key

Backlog reads, fetches and deletes use SQLAlchemy Core on the shared async
engine. Notifications arrive on a dedicated autocommit psycopg connection,
because LISTEN is bound to a session and must not be returned to a pool.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

import psycopg
from psycopg import sql
from sqlalchemy import and_, delete, func, select, text
from sqlalchemy.exc import SQLAlchemyError

from outbox_relay.core.exceptions import OutboxReadError, StorageError
from outbox_relay.infra.outbox.models import (
    ChangeEvent,
    ChangeOperation,
    IdentityKey,
    OutboxRecord,
    outbox_table,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping

    from sqlalchemy import Select, Table
    from sqlalchemy.ext.asyncio import AsyncEngine

    from outbox_relay.core.settings.relay import OutboxConfig

logger = logging.getLogger(__name__)

NOTIFY_FUNCTION = "outbox_relay_notify"

NOTIFY_FUNCTION_DDL = f"""
CREATE OR REPLACE FUNCTION {NOTIFY_FUNCTION}() RETURNS trigger
LANGUAGE plpgsql AS $$
DECLARE
    changed RECORD;
BEGIN
    IF TG_OP = 'DELETE' THEN
        changed := OLD;
    ELSE
        changed := NEW;
    END IF;
    PERFORM pg_notify(
        TG_ARGV[0],
        json_build_object('op', TG_OP, 'row', to_jsonb(changed) - 'payload')::text
    );
    RETURN NULL;
END;
$$
"""


class ChangeStream(Protocol):
    """Live change notifications of one outbox table."""

    @property
    def pending(self) -> int:
        """Notifications received but not yet read."""
        ...

    def __aiter__(self) -> ChangeStream: ...

    async def __anext__(self) -> Any: ...


class OutboxSource(Protocol):
    """Storage operations a watcher performs on one outbox table.

    ``scan`` and ``subscribe`` hand out raw items; the watcher decodes each one
    through ``decode_row`` / ``decode_change`` so that a single bad item can be
    logged and skipped without ending the iteration.
    """

    @property
    def name(self) -> str: ...

    def scan(self) -> AsyncIterator[Any]: ...

    def decode_row(self, raw: Any) -> OutboxRecord: ...

    def subscribe(self) -> contextlib.AbstractAsyncContextManager[ChangeStream]: ...

    def decode_change(self, raw: Any) -> ChangeEvent: ...

    async def fetch(self, key: IdentityKey) -> OutboxRecord | None: ...

    async def delete(self, key: IdentityKey) -> int: ...


_CLOSED = object()


class NotificationStream:
    """Buffered async iterator over NOTIFY payloads of one connection.

    Reading starts as soon as the stream is created, so notifications sent
    while the watcher is still replaying the backlog are queued rather than
    left unread. The iterator ends when the connection is lost.
    """

    def __init__(self, conn: psycopg.AsyncConnection[Any], channel: str) -> None:
        self._conn = conn
        self._channel = channel
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task = asyncio.create_task(self._pump(), name=f"listen:{channel}")

    async def _pump(self) -> None:
        try:
            async for notify in self._conn.notifies():
                self._queue.put_nowait(notify.payload)
        except psycopg.OperationalError as e:
            logger.warning(
                "Notification connection lost",
                extra={"channel": self._channel, "error": str(e)},
            )
        finally:
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> NotificationStream:
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def aclose(self) -> None:
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


class PostgresOutbox:
    """One outbox table in PostgreSQL.

    Attributes:
        config: The outbox configuration this table was built from.
        table: SQLAlchemy Core table for the outbox.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        config: OutboxConfig,
        *,
        conninfo: str,
        scan_batch_size: int = 500,
        table: Table | None = None,
    ) -> None:
        self._engine = engine
        self._conninfo = conninfo
        self._scan_batch_size = scan_batch_size
        self.config = config
        self.table = table if table is not None else outbox_table(
            config.table, epoch_column=config.epoch_column
        )
        self._has_epoch = "epoch" in self.table.c

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def channel(self) -> str:
        return self.config.notify_channel

    # ──────────────────────────────────────────────────────
    # Statements
    # ──────────────────────────────────────────────────────

    def backlog_statement(self) -> Select[Any]:
        """Full scan in replay order: oldest first, ties broken by identity."""
        c = self.table.c
        order_by = [c.created_at.asc(), c.partition_key.asc(), c.sequence_number.asc()]
        if self._has_epoch:
            order_by.append(c.epoch.asc())
        return select(self.table).order_by(*order_by)

    def _key_clause(self, key: IdentityKey) -> Any:
        c = self.table.c
        clauses = [c.partition_key == key.partition_key, c.sequence_number == key.sequence_number]
        if self._has_epoch and key.epoch is not None:
            clauses.append(c.epoch == key.epoch)
        return and_(*clauses)

    def fetch_statement(self, key: IdentityKey) -> Select[Any]:
        return select(self.table).where(self._key_clause(key)).limit(1)

    def delete_statement(self, key: IdentityKey) -> Any:
        return delete(self.table).where(self._key_clause(key))

    # ──────────────────────────────────────────────────────
    # Backlog
    # ──────────────────────────────────────────────────────

    async def scan(self) -> AsyncIterator[Mapping[str, Any]]:
        """Stream every row currently in the table, in replay order.

        Rows are fetched through a server-side cursor in batches of
        ``scan_batch_size``.

        Raises:
            StorageError: If the query itself fails.
        """
        stmt = self.backlog_statement().execution_options(yield_per=self._scan_batch_size)
        try:
            async with self._engine.connect() as conn:
                result = await conn.stream(stmt)
                async for row in result.mappings():
                    yield row
        except SQLAlchemyError as e:
            msg = f"Backlog scan of {self.name} failed: {e}"
            raise StorageError(msg, extra={"table": self.name, "operation": "scan"}) from e

    def decode_row(self, raw: Mapping[str, Any]) -> OutboxRecord:
        """Turn a table row into an OutboxRecord.

        Raises:
            OutboxReadError: If a column is missing or has the wrong type.
        """
        try:
            payload = raw["payload"]
            if payload is None:
                msg = "payload is NULL"
                raise ValueError(msg)
            epoch = raw.get("epoch") if self._has_epoch else None
            return OutboxRecord(
                payload=bytes(payload),
                created_at=raw["created_at"],
                sequence_number=int(raw["sequence_number"]),
                partition_key=str(raw["partition_key"]),
                epoch=int(epoch) if epoch is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            msg = f"Undecodable row in {self.name}: {e}"
            raise OutboxReadError(msg, extra={"table": self.name}) from e

    # ──────────────────────────────────────────────────────
    # Live changes
    # ──────────────────────────────────────────────────────

    @contextlib.asynccontextmanager
    async def subscribe(self) -> AsyncIterator[NotificationStream]:
        """LISTEN on the outbox channel for the lifetime of the context.

        Raises:
            StorageError: If the listening connection cannot be opened.
        """
        try:
            conn = await psycopg.AsyncConnection.connect(self._conninfo, autocommit=True)
        except psycopg.Error as e:
            msg = f"Could not open notification connection for {self.name}: {e}"
            raise StorageError(msg, extra={"table": self.name, "operation": "subscribe"}) from e

        stream: NotificationStream | None = None
        try:
            await conn.execute(sql.SQL("LISTEN {}").format(sql.Identifier(self.channel)))
            logger.debug("Listening for outbox changes", extra={"table": self.name, "channel": self.channel})
            stream = NotificationStream(conn, self.channel)
            yield stream
        finally:
            if stream is not None:
                await stream.aclose()
            await conn.close()

    def decode_change(self, raw: str | bytes) -> ChangeEvent:
        """Decode a notification payload sent by the notify trigger.

        Only inserts need a key; other operations are returned bare so the
        watcher can ignore them.

        Raises:
            OutboxReadError: If the payload is not the expected JSON document.
        """
        try:
            data = json.loads(raw)
            operation = ChangeOperation.parse(data.get("op"))
            if operation is not ChangeOperation.INSERT:
                return ChangeEvent(operation=operation)

            row = data["row"]
            epoch = row.get("epoch") if self._has_epoch else None
            key = IdentityKey(
                partition_key=str(row["partition_key"]),
                sequence_number=int(row["sequence_number"]),
                epoch=int(epoch) if epoch is not None else None,
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            msg = f"Undecodable change notification on {self.channel}: {e}"
            raise OutboxReadError(msg, extra={"table": self.name, "channel": self.channel}) from e
        return ChangeEvent(operation=operation, key=key)

    # ──────────────────────────────────────────────────────
    # Point operations
    # ──────────────────────────────────────────────────────

    async def fetch(self, key: IdentityKey) -> OutboxRecord | None:
        """Load the full row for a key, or None if it no longer exists."""
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(self.fetch_statement(key))
                row = result.mappings().first()
        except SQLAlchemyError as e:
            msg = f"Fetch of {key} from {self.name} failed: {e}"
            raise StorageError(
                msg, extra={"table": self.name, "operation": "fetch", "identity": str(key)}
            ) from e
        return self.decode_row(row) if row is not None else None

    async def delete(self, key: IdentityKey) -> int:
        """Delete a delivered row.

        Returns:
            Number of rows deleted (0 if another relay already removed it).
        """
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(self.delete_statement(key))
        except SQLAlchemyError as e:
            msg = f"Delete of {key} from {self.name} failed: {e}"
            raise StorageError(
                msg, extra={"table": self.name, "operation": "delete", "identity": str(key)}
            ) from e
        return result.rowcount

    async def count(self) -> int:
        """Number of rows waiting for delivery."""
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(select(func.count()).select_from(self.table))
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            msg = f"Count of {self.name} failed: {e}"
            raise StorageError(msg, extra={"table": self.name, "operation": "count"}) from e

    # ──────────────────────────────────────────────────────
    # Schema
    # ──────────────────────────────────────────────────────

    def trigger_statements(self) -> list[str]:
        """DDL for the notify trigger on this table (idempotent)."""
        trigger = f"{self.name}_notify"
        return [
            f'DROP TRIGGER IF EXISTS "{trigger}" ON "{self.name}"',
            (
                f'CREATE TRIGGER "{trigger}" AFTER INSERT OR UPDATE OR DELETE ON "{self.name}" '
                f"FOR EACH ROW EXECUTE FUNCTION {NOTIFY_FUNCTION}('{self.channel}')"
            ),
        ]

    async def install(self) -> None:
        """Create the table if missing and (re)install its notify trigger."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(lambda sync_conn: self.table.create(sync_conn, checkfirst=True))
                await conn.execute(text(NOTIFY_FUNCTION_DDL))
                for statement in self.trigger_statements():
                    await conn.execute(text(statement))
        except SQLAlchemyError as e:
            msg = f"Schema install for {self.name} failed: {e}"
            raise StorageError(msg, extra={"table": self.name, "operation": "install"}) from e
        logger.info("Outbox table and trigger installed", extra={"table": self.name, "channel": self.channel})


__all__ = [
    "NOTIFY_FUNCTION",
    "ChangeStream",
    "NotificationStream",
    "OutboxSource",
    "PostgresOutbox",
]
