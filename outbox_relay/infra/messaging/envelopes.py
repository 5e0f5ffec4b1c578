"""Envelope encoders: how an outbox record becomes a destination and a body.

Each outbox kind is bound to exactly one encoder in configuration:

- ``direct``: the stored payload is relayed unchanged to ``<prefix>.<partition_key>``.
- ``broadcast``: the payload is wrapped in a Centrifugo broadcast command and
  published to ``<subject>.<namespace>.<partition_key>``.
- ``frame``: the payload is a stored binary frame that gets re-wrapped with
  its delivery sequence header.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, ConfigDict

from outbox_relay.core.exceptions import EncodeError
from outbox_relay.infra.messaging.frames import Frame, FrameError, SequencedFrame

if TYPE_CHECKING:
    from outbox_relay.infra.outbox.models import OutboxRecord


@dataclass(frozen=True, slots=True)
class Envelope:
    destination: str
    body: bytes


class EnvelopeEncoder(Protocol):
    """Turns a stored record into an envelope, or raises EncodeError."""

    def encode(self, record: OutboxRecord) -> Envelope: ...


class CentrifugoMethod(str, Enum):
    PUBLISH = "publish"
    BROADCAST = "broadcast"


class CentrifugoEventType(str, Enum):
    MESSAGE = "message"
    USER_ADDED = "user_added"
    USER_REMOVED = "user_removed"
    GENERIC_CHANGE = "generic_change"


class CentrifugoPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    channels: list[str]
    event_type: CentrifugoEventType
    data: str


class CentrifugoMessage(BaseModel):
    """Server API command consumed by Centrifugo from the bus."""

    model_config = ConfigDict(frozen=True)

    method: CentrifugoMethod
    payload: CentrifugoPayload


class DirectRelayEncoder:
    """Relay the payload as-is to ``<prefix>.<partition_key>``."""

    def __init__(self, prefix: str = "chat") -> None:
        self.prefix = prefix

    def encode(self, record: OutboxRecord) -> Envelope:
        return Envelope(destination=f"{self.prefix}.{record.partition_key}", body=record.payload)


class BroadcastEnvelopeEncoder:
    """Wrap the payload in a Centrifugo command for the partition's channel."""

    def __init__(
        self,
        subject: str,
        namespace: str,
        event_type: CentrifugoEventType = CentrifugoEventType.MESSAGE,
        method: CentrifugoMethod = CentrifugoMethod.BROADCAST,
    ) -> None:
        self.subject = subject
        self.namespace = namespace
        self.event_type = CentrifugoEventType(event_type)
        self.method = CentrifugoMethod(method)

    def channel(self, partition_key: str) -> str:
        return f"{self.namespace}:{partition_key}"

    def build_message(self, record: OutboxRecord) -> CentrifugoMessage:
        return CentrifugoMessage(
            method=self.method,
            payload=CentrifugoPayload(
                channels=[self.channel(record.partition_key)],
                event_type=self.event_type,
                data=base64.b64encode(record.payload).decode("ascii"),
            ),
        )

    def encode(self, record: OutboxRecord) -> Envelope:
        body = self.build_message(record).model_dump_json().encode("utf-8")
        return Envelope(
            destination=f"{self.subject}.{self.namespace}.{record.partition_key}",
            body=body,
        )


class SequencedFrameEncoder:
    """Decode the stored frame and re-wrap it with the record's sequence header."""

    def __init__(self, prefix: str = "chat") -> None:
        self.prefix = prefix

    def encode(self, record: OutboxRecord) -> Envelope:
        try:
            frame = Frame.decode(record.payload)
            body = SequencedFrame.wrap(
                frame,
                sequence_number=record.sequence_number,
                epoch=record.epoch,
                created_at=record.created_at,
            ).encode()
        except FrameError as e:
            msg = f"Stored payload is not a valid frame: {e}"
            raise EncodeError(msg, key=record.identity) from e
        return Envelope(destination=f"{self.prefix}.{record.partition_key}", body=body)


__all__ = [
    "BroadcastEnvelopeEncoder",
    "CentrifugoEventType",
    "CentrifugoMessage",
    "CentrifugoMethod",
    "CentrifugoPayload",
    "DirectRelayEncoder",
    "Envelope",
    "EnvelopeEncoder",
    "SequencedFrameEncoder",
]
