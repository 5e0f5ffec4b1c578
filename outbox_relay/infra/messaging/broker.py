"""FastStream broker lifecycle for the relay.

The relay only publishes, so brokers are used without subscribers:
- ``create_*_broker`` builds a broker from settings
- ``broker_context`` connects it (with a timeout and startup retries) and
  closes it on exit
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING, Any

from faststream.nats import NatsBroker
from faststream.rabbit import ExchangeType, RabbitBroker, RabbitExchange

from outbox_relay.infra.startup import connect_with_retry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from outbox_relay.core.settings import NatsSettings, RabbitSettings

logger = logging.getLogger(__name__)


def create_nats_broker(settings: NatsSettings) -> NatsBroker:
    """Build an unconnected NatsBroker from settings."""
    return NatsBroker(
        servers=settings.servers,
        name=settings.connection_name,
        connect_timeout=settings.connection_timeout,
        graceful_timeout=settings.graceful_timeout,
        logger=logger,
    )


def create_rabbit_broker(settings: RabbitSettings) -> RabbitBroker:
    """Build an unconnected RabbitBroker from settings."""
    return RabbitBroker(
        url=settings.url,
        graceful_timeout=settings.graceful_timeout,
        logger=logger,
    )


def rabbit_exchange(settings: RabbitSettings) -> RabbitExchange:
    """Exchange the relay publishes to (topic by default)."""
    return RabbitExchange(
        settings.exchange_name,
        type=ExchangeType(settings.exchange_type),
        durable=settings.exchange_durable,
    )


async def start_broker(broker: NatsBroker | RabbitBroker, *, timeout: float) -> None:
    """Connect a broker, failing with ConnectionError after ``timeout`` seconds."""
    name = type(broker).__name__
    logger.info(f"Starting {name}", extra={"connection_timeout": timeout})
    try:
        await asyncio.wait_for(broker.start(), timeout=timeout)
    except TimeoutError:
        error_msg = f"{name} connection timeout after {timeout}s"
        logger.error(error_msg, extra={"connection_timeout": timeout})
        raise ConnectionError(error_msg) from None
    logger.info(f"{name} started successfully")


async def stop_broker(broker: NatsBroker | RabbitBroker) -> None:
    name = type(broker).__name__
    try:
        await broker.close()
        logger.info(f"{name} stopped")
    except Exception as e:
        logger.warning(f"Error stopping {name}", extra={"error": str(e)})


@asynccontextmanager
async def broker_context(
    broker: NatsBroker | RabbitBroker,
    *,
    timeout: float,
    attempts: int = 3,
    exchange: RabbitExchange | None = None,
) -> AsyncIterator[Any]:
    """Connect ``broker`` for the duration of the block.

    Connection is retried ``attempts`` times with exponential backoff. When an
    exchange is given it is declared once connected.

    Raises:
        StartupConnectionError: If the broker could not be connected.
    """

    async def _connect() -> None:
        await start_broker(broker, timeout=timeout)

    await connect_with_retry(_connect, target=type(broker).__name__, attempts=attempts, max_delay=10.0)
    try:
        if exchange is not None and isinstance(broker, RabbitBroker):
            await broker.declare_exchange(exchange)
        yield broker
    finally:
        await stop_broker(broker)


__all__ = [
    "broker_context",
    "create_nats_broker",
    "create_rabbit_broker",
    "rabbit_exchange",
    "start_broker",
    "stop_broker",
]
