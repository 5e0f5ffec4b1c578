"""Outbox data model.

The outbox table is written by another service in the same transaction as its
domain changes; the relay only reads and deletes rows. Every outbox table
shares the same shape, so tables are described with a SQLAlchemy Core
``Table`` factory rather than one declarative class per table.

Table shape:
    partition_key    VARCHAR(255)  destination channel (e.g. a chat id)
    sequence_number  BIGINT        per-partition monotonic counter
    epoch            BIGINT        optional generation counter
    payload          BYTEA         message body or binary frame
    created_at       TIMESTAMPTZ   replay order

The identity key ``(partition_key, sequence_number[, epoch])`` is the primary
key and the deletion key.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, NamedTuple

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    LargeBinary,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    func,
)


class WatcherPhase(str, Enum):
    """Lifecycle phases of an outbox watcher (in memory only)."""

    REPLAYING_BACKLOG = "replaying_backlog"
    TAILING_LIVE = "tailing_live"
    DRAINING = "draining"
    STOPPED = "stopped"


class ChangeOperation(str, Enum):
    """Row operation reported by the outbox notify trigger."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    TRUNCATE = "truncate"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> ChangeOperation:
        """Map a trigger ``TG_OP`` value (e.g. ``INSERT``) to an operation."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class IdentityKey(NamedTuple):
    """Unique key of an outbox row; also the deletion key."""

    partition_key: str
    sequence_number: int
    epoch: int | None = None

    def __str__(self) -> str:
        if self.epoch is None:
            return f"({self.partition_key}, {self.sequence_number})"
        return f"({self.partition_key}, {self.sequence_number}, epoch={self.epoch})"


@dataclass(frozen=True, slots=True)
class OutboxRecord:
    """One unit of work awaiting delivery.

    Attributes:
        payload: Opaque message body (or a binary frame to re-wrap).
        created_at: Creation time; defines replay order.
        sequence_number: Monotonic counter scoped to the partition key.
        partition_key: Destination partition (e.g. a chat id).
        epoch: Generation counter disambiguating sequence number reuse.
    """

    payload: bytes
    created_at: datetime
    sequence_number: int
    partition_key: str
    epoch: int | None = None

    @property
    def identity(self) -> IdentityKey:
        return IdentityKey(self.partition_key, self.sequence_number, self.epoch)

    def replay_order(self) -> tuple[datetime, str, int, int]:
        """Sort key for backlog replay: oldest first, ties broken by identity."""
        created_at = self.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return (created_at, self.partition_key, self.sequence_number, self.epoch or 0)

    def describe(self) -> dict[str, Any]:
        """Log-safe summary; payload bytes are never logged."""
        return {
            "partition_key": self.partition_key,
            "sequence_number": self.sequence_number,
            "epoch": self.epoch,
            "created_at": self.created_at.isoformat(),
            "payload_size": len(self.payload),
        }


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A decoded live change notification.

    ``document`` is set when the notification carried the full row; otherwise
    the watcher fetches it by ``key``.
    """

    operation: ChangeOperation
    key: IdentityKey | None = None
    document: OutboxRecord | None = None


def outbox_table(name: str, metadata: MetaData | None = None, *, epoch_column: bool = True) -> Table:
    """Build the SQLAlchemy Core table for one outbox.

    Args:
        name: Table name.
        metadata: MetaData to register the table in (a fresh one by default).
        epoch_column: Whether the table carries an epoch column in its key.

    Returns:
        Table with the outbox columns, primary key and replay-order index.
    """
    metadata = metadata if metadata is not None else MetaData()
    key_columns = ["partition_key", "sequence_number"]

    columns: list[Any] = [
        Column("partition_key", String(255), nullable=False),
        Column("sequence_number", BigInteger, nullable=False),
    ]
    if epoch_column:
        columns.append(Column("epoch", BigInteger, nullable=False, server_default="0"))
        key_columns.append("epoch")
    columns.extend(
        [
            Column("payload", LargeBinary, nullable=False),
            Column(
                "created_at",
                DateTime(timezone=True),
                nullable=False,
                server_default=func.now(),
            ),
        ]
    )

    return Table(
        name,
        metadata,
        *columns,
        PrimaryKeyConstraint(*key_columns, name=f"pk_{name}"),
        Index(f"ix_{name}_created_at", "created_at"),
    )


__all__ = [
    "ChangeEvent",
    "ChangeOperation",
    "IdentityKey",
    "OutboxRecord",
    "WatcherPhase",
    "outbox_table",
]
