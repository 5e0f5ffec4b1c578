"""Process wiring: settings -> sources, encoders, publisher -> watchers -> orchestrator."""

from __future__ import annotations

from contextlib import asynccontextmanager
from functools import partial
import logging
from typing import TYPE_CHECKING

from outbox_relay.core.exceptions import ConfigurationError
from outbox_relay.core.settings import (
    get_db_settings,
    get_nats_settings,
    get_rabbit_settings,
    get_relay_settings,
)
from outbox_relay.infra.database import database_context
from outbox_relay.infra.messaging.broker import (
    broker_context,
    create_nats_broker,
    create_rabbit_broker,
    rabbit_exchange,
)
from outbox_relay.infra.messaging.envelopes import (
    BroadcastEnvelopeEncoder,
    CentrifugoEventType,
    CentrifugoMethod,
    DirectRelayEncoder,
    SequencedFrameEncoder,
)
from outbox_relay.infra.messaging.publisher import NatsPublisher, RabbitPublisher
from outbox_relay.infra.outbox.orchestrator import AuxiliaryService, RelayOrchestrator
from outbox_relay.infra.outbox.repository import PostgresOutbox
from outbox_relay.infra.outbox.shutdown import ShutdownSignal
from outbox_relay.infra.outbox.watcher import OutboxBinding, OutboxWatcher

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from outbox_relay.core.settings import (
        NatsSettings,
        OutboxConfig,
        PostgresSettings,
        RabbitSettings,
        RelaySettings,
    )
    from outbox_relay.infra.messaging.envelopes import EnvelopeEncoder
    from outbox_relay.infra.messaging.publisher import Publisher
    from outbox_relay.infra.outbox.orchestrator import RelayReport
    from outbox_relay.infra.outbox.repository import OutboxSource

logger = logging.getLogger(__name__)


def build_encoder(outbox: OutboxConfig, nats_settings: NatsSettings) -> EnvelopeEncoder:
    """Build the envelope encoder configured for an outbox kind."""
    if outbox.encoder == "direct":
        return DirectRelayEncoder(prefix=outbox.subject_prefix or "chat")
    if outbox.encoder == "broadcast":
        return BroadcastEnvelopeEncoder(
            subject=outbox.subject_prefix or nats_settings.subject,
            namespace=outbox.namespace or nats_settings.messages_namespace,
            event_type=CentrifugoEventType(outbox.event_type),
            method=CentrifugoMethod(outbox.method),
        )
    if outbox.encoder == "frame":
        return SequencedFrameEncoder(prefix=outbox.subject_prefix or "chat")
    msg = f"Unknown encoder {outbox.encoder!r} for outbox {outbox.kind!r}"
    raise ConfigurationError(msg, extra={"kind": outbox.kind})


def postgres_sources(engine: AsyncEngine, db_settings: PostgresSettings) -> Callable[[OutboxConfig], PostgresOutbox]:
    """Factory building a PostgresOutbox per configured outbox."""

    def _factory(outbox: OutboxConfig) -> PostgresOutbox:
        return PostgresOutbox(
            engine,
            outbox,
            conninfo=db_settings.psycopg_url,
            scan_batch_size=db_settings.scan_batch_size,
        )

    return _factory


def build_watchers(
    relay_settings: RelaySettings,
    source_factory: Callable[[OutboxConfig], OutboxSource],
    publisher: Publisher,
    shutdown: ShutdownSignal,
    nats_settings: NatsSettings,
) -> list[OutboxWatcher]:
    """One watcher per configured watcher, one binding per outbox table."""
    watchers = []
    for config in relay_settings.watchers:
        bindings = [
            OutboxBinding(
                kind=outbox.kind,
                source=source_factory(outbox),
                encoder=build_encoder(outbox, nats_settings),
            )
            for outbox in config.outboxes
        ]
        watchers.append(OutboxWatcher(config.name, bindings, publisher, shutdown))
    return watchers


@asynccontextmanager
async def publisher_context(
    relay_settings: RelaySettings,
    nats_settings: NatsSettings,
    rabbit_settings: RabbitSettings,
) -> AsyncIterator[Publisher]:
    """Connect the configured bus and yield a publisher for it."""
    if relay_settings.bus == "nats":
        nats_broker = create_nats_broker(nats_settings)
        async with broker_context(
            nats_broker,
            timeout=nats_settings.connection_timeout,
            attempts=nats_settings.startup_retry_attempts,
        ):
            yield NatsPublisher(nats_broker)
    elif relay_settings.bus == "rabbit":
        exchange = rabbit_exchange(rabbit_settings)
        rabbit_broker = create_rabbit_broker(rabbit_settings)
        async with broker_context(
            rabbit_broker,
            timeout=rabbit_settings.connection_timeout,
            attempts=rabbit_settings.startup_retry_attempts,
            exchange=exchange,
        ):
            yield RabbitPublisher(rabbit_broker, exchange)
    else:
        msg = f"Unsupported bus {relay_settings.bus!r}"
        raise ConfigurationError(msg)


async def install_outboxes(engine: AsyncEngine, relay_settings: RelaySettings, db_settings: PostgresSettings) -> list[str]:
    """Create every configured outbox table and its notify trigger.

    Returns:
        Names of the tables installed.
    """
    factory = postgres_sources(engine, db_settings)
    installed = []
    for outbox in relay_settings.outboxes:
        source = factory(outbox)
        await source.install()
        installed.append(outbox.table)
    return installed


async def pending_counts(engine: AsyncEngine, relay_settings: RelaySettings, db_settings: PostgresSettings) -> dict[str, int]:
    """Number of undelivered rows per outbox table."""
    factory = postgres_sources(engine, db_settings)
    return {outbox.table: await factory(outbox).count() for outbox in relay_settings.outboxes}


async def run_relay(*, health: bool | None = None, install_signal_handlers: bool = True) -> RelayReport:
    """Run the relay until shutdown.

    Args:
        health: Serve the health endpoint. Defaults to ``RELAY_HEALTH_ENABLED``.
        install_signal_handlers: Route SIGINT/SIGTERM to the shutdown signal.

    Returns:
        How the relay stopped.
    """
    relay_settings = get_relay_settings()
    db_settings = get_db_settings()
    nats_settings = get_nats_settings()
    rabbit_settings = get_rabbit_settings()

    shutdown = ShutdownSignal()
    if install_signal_handlers:
        shutdown.install()

    logger.info(
        "Starting outbox relay",
        extra={
            "bus": relay_settings.bus,
            "watchers": [w.name for w in relay_settings.watchers],
            "tables": [o.table for o in relay_settings.outboxes],
        },
    )

    try:
        async with (
            database_context(db_settings) as engine,
            publisher_context(relay_settings, nats_settings, rabbit_settings) as publisher,
        ):
            if relay_settings.install_triggers:
                await install_outboxes(engine, relay_settings, db_settings)

            watchers = build_watchers(
                relay_settings,
                postgres_sources(engine, db_settings),
                publisher,
                shutdown,
                nats_settings,
            )

            services = []
            if relay_settings.health_enabled if health is None else health:
                from outbox_relay.app.main import create_app, run_health_server

                services.append(
                    AuxiliaryService(
                        name="health",
                        run=partial(
                            run_health_server,
                            create_app(watchers),
                            shutdown,
                            host=relay_settings.health_host,
                            port=relay_settings.health_port,
                        ),
                    )
                )

            orchestrator = RelayOrchestrator(
                watchers,
                shutdown,
                shutdown_timeout=relay_settings.shutdown_timeout,
                services=services,
            )
            return await orchestrator.run()
    finally:
        if install_signal_handlers:
            shutdown.uninstall()
