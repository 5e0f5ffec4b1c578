"""Publisher abstraction over the messaging bus.

A publisher makes exactly one delivery attempt per call. Retrying is left to
the caller: an undelivered outbox row stays in its table and is replayed on
the next start.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from outbox_relay.core.exceptions import PublishError

if TYPE_CHECKING:
    from faststream.nats import NatsBroker
    from faststream.rabbit import RabbitBroker, RabbitExchange

logger = logging.getLogger(__name__)


@runtime_checkable
class Publisher(Protocol):
    """Send bytes to a destination (subject, routing key, ...).

    Raises:
        PublishError: On any transport-level failure.
    """

    async def publish(self, destination: str, body: bytes) -> None: ...


class NatsPublisher:
    """Publish raw bytes to NATS subjects through a FastStream NatsBroker."""

    def __init__(self, broker: NatsBroker) -> None:
        self._broker = broker

    async def publish(self, destination: str, body: bytes) -> None:
        try:
            await self._broker.publish(body, subject=destination)
        except Exception as e:
            raise PublishError(destination, e) from e
        logger.debug("Published to NATS", extra={"destination": destination, "size": len(body)})


class RabbitPublisher:
    """Publish raw bytes to a RabbitMQ exchange, using the destination as routing key."""

    def __init__(self, broker: RabbitBroker, exchange: RabbitExchange) -> None:
        self._broker = broker
        self._exchange = exchange

    async def publish(self, destination: str, body: bytes) -> None:
        try:
            await self._broker.publish(body, routing_key=destination, exchange=self._exchange)
        except Exception as e:
            raise PublishError(destination, e) from e
        logger.debug(
            "Published to RabbitMQ",
            extra={"destination": destination, "exchange": self._exchange.name, "size": len(body)},
        )


__all__ = ["NatsPublisher", "Publisher", "RabbitPublisher"]
