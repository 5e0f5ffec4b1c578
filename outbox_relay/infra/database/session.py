"""Database engine management with the psycopg3 async driver."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine as _create_async_engine

from outbox_relay.infra.startup import connect_with_retry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine

    from outbox_relay.core.settings import PostgresSettings

logger = logging.getLogger(__name__)


def create_engine(settings: PostgresSettings) -> AsyncEngine:
    """Create the async engine used for backlog scans, fetches and deletes."""
    return _create_async_engine(settings.url, **settings.sqlalchemy_engine_kwargs())


async def init_database(engine: AsyncEngine, settings: PostgresSettings) -> None:
    """Check connectivity, retrying with exponential backoff.

    Uses retry settings from PostgresSettings:
    - startup_retry_attempts: Maximum number of connection attempts
    - startup_retry_delay: Initial delay between retries

    Raises:
        StartupConnectionError: If the database is unreachable after all attempts.
    """
    logger.info(
        "Initializing database connection with retry",
        extra={
            "host": settings.host,
            "database": settings.name,
            "max_attempts": settings.startup_retry_attempts,
            "initial_delay": settings.startup_retry_delay,
        },
    )

    async def _ping() -> None:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    await connect_with_retry(
        _ping,
        target=f"PostgreSQL {settings.host}/{settings.name}",
        attempts=settings.startup_retry_attempts,
        initial_delay=settings.startup_retry_delay,
    )
    logger.info(
        "Database connection established successfully",
        extra={"host": settings.host, "database": settings.name, "driver": "psycopg3"},
    )


@asynccontextmanager
async def database_context(settings: PostgresSettings, *, check: bool = True) -> AsyncIterator[AsyncEngine]:
    """Yield a connected engine and dispose of it on exit."""
    engine = create_engine(settings)
    try:
        if check:
            await init_database(engine, settings)
        yield engine
    finally:
        await engine.dispose()
        logger.debug("Database engine disposed")
