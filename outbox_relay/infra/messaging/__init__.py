"""Messaging: publishers, brokers and envelope encoders."""

from __future__ import annotations

from .envelopes import (
    BroadcastEnvelopeEncoder,
    CentrifugoEventType,
    CentrifugoMethod,
    DirectRelayEncoder,
    Envelope,
    EnvelopeEncoder,
    SequencedFrameEncoder,
)
from .publisher import NatsPublisher, Publisher, RabbitPublisher

__all__ = [
    "BroadcastEnvelopeEncoder",
    "CentrifugoEventType",
    "CentrifugoMethod",
    "DirectRelayEncoder",
    "Envelope",
    "EnvelopeEncoder",
    "NatsPublisher",
    "Publisher",
    "RabbitPublisher",
    "SequencedFrameEncoder",
]
