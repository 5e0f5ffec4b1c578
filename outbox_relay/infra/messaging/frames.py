"""Binary frame codec for nested protocol payloads.

A stored ``Frame`` is what the writing service puts into the outbox payload
column. Before publish the relay re-wraps it into a ``SequencedFrame`` that
carries the relay-assigned delivery header.

Wire layout (network byte order):

    Frame            magic "OF" | version u8 | kind u8 | length u32 | body
    SequencedFrame   magic "OS" | version u8 | kind u8 | sequence u64 |
                     epoch u64 | created_at_ms i64 | length u32 | body
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import struct

FRAME_MAGIC = b"OF"
SEQUENCED_MAGIC = b"OS"
FRAME_VERSION = 1

_FRAME_HEADER = struct.Struct(">2sBBI")
_SEQUENCED_HEADER = struct.Struct(">2sBBQQqI")


class FrameError(ValueError):
    """Raised when bytes do not hold a well-formed frame."""


def _body(data: bytes, header_size: int, length: int) -> bytes:
    body = data[header_size:]
    if len(body) != length:
        msg = f"frame body length mismatch: header says {length}, got {len(body)}"
        raise FrameError(msg)
    return body


@dataclass(frozen=True, slots=True)
class Frame:
    kind: int
    body: bytes
    version: int = FRAME_VERSION

    @classmethod
    def decode(cls, data: bytes) -> Frame:
        if len(data) < _FRAME_HEADER.size:
            msg = f"frame too short: {len(data)} bytes"
            raise FrameError(msg)
        magic, version, kind, length = _FRAME_HEADER.unpack_from(data)
        if magic != FRAME_MAGIC:
            msg = f"bad frame magic {magic!r}"
            raise FrameError(msg)
        if version != FRAME_VERSION:
            msg = f"unsupported frame version {version}"
            raise FrameError(msg)
        return cls(kind=kind, body=_body(data, _FRAME_HEADER.size, length), version=version)

    def encode(self) -> bytes:
        return _FRAME_HEADER.pack(FRAME_MAGIC, self.version, self.kind, len(self.body)) + self.body


@dataclass(frozen=True, slots=True)
class SequencedFrame:
    """A frame stamped with its delivery sequence number and creation time."""

    kind: int
    sequence_number: int
    epoch: int
    created_at_ms: int
    body: bytes
    version: int = FRAME_VERSION

    @classmethod
    def wrap(cls, frame: Frame, *, sequence_number: int, epoch: int | None, created_at: datetime) -> SequencedFrame:
        """Add the record header to a frame. Naive timestamps are taken as UTC."""
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=UTC)
        return cls(
            kind=frame.kind,
            sequence_number=sequence_number,
            epoch=epoch or 0,
            created_at_ms=int(created_at.timestamp() * 1000),
            body=frame.body,
            version=frame.version,
        )

    @classmethod
    def decode(cls, data: bytes) -> SequencedFrame:
        if len(data) < _SEQUENCED_HEADER.size:
            msg = f"sequenced frame too short: {len(data)} bytes"
            raise FrameError(msg)
        magic, version, kind, sequence, epoch, created_at_ms, length = _SEQUENCED_HEADER.unpack_from(data)
        if magic != SEQUENCED_MAGIC:
            msg = f"bad sequenced frame magic {magic!r}"
            raise FrameError(msg)
        return cls(
            kind=kind,
            sequence_number=sequence,
            epoch=epoch,
            created_at_ms=created_at_ms,
            body=_body(data, _SEQUENCED_HEADER.size, length),
            version=version,
        )

    def encode(self) -> bytes:
        try:
            header = _SEQUENCED_HEADER.pack(
                SEQUENCED_MAGIC,
                self.version,
                self.kind,
                self.sequence_number,
                self.epoch,
                self.created_at_ms,
                len(self.body),
            )
        except struct.error as e:
            raise FrameError(str(e)) from e
        return header + self.body


__all__ = [
    "FRAME_MAGIC",
    "FRAME_VERSION",
    "SEQUENCED_MAGIC",
    "Frame",
    "FrameError",
    "SequencedFrame",
]
