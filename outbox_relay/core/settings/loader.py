"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the process.

Usage:
    from outbox_relay.core.settings import get_relay_settings

    settings = get_relay_settings()  # First call: loads and validates
    settings = get_relay_settings()  # Subsequent calls: returns cached instance

Testing:
    Clear the caches to force a reload: clear_all_caches()
"""

from __future__ import annotations

from functools import lru_cache

from .logs import LoggingSettings
from .nats import NatsSettings
from .postgres import PostgresSettings
from .rabbit import RabbitSettings
from .relay import RelaySettings


@lru_cache(maxsize=1)
def get_relay_settings() -> RelaySettings:
    """Get cached relay topology settings."""
    return RelaySettings()


@lru_cache(maxsize=1)
def get_db_settings() -> PostgresSettings:
    """Get cached database settings."""
    return PostgresSettings()


@lru_cache(maxsize=1)
def get_nats_settings() -> NatsSettings:
    """Get cached NATS settings."""
    return NatsSettings()


@lru_cache(maxsize=1)
def get_rabbit_settings() -> RabbitSettings:
    """Get cached RabbitMQ settings."""
    return RabbitSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings."""
    return LoggingSettings()


def clear_all_caches() -> None:
    """Clear all settings caches.

    Useful for testing or after changing the config directory.
    """
    get_relay_settings.cache_clear()
    get_db_settings.cache_clear()
    get_nats_settings.cache_clear()
    get_rabbit_settings.cache_clear()
    get_logging_settings.cache_clear()
