"""Modular Pydantic Settings v2 configuration.

One frozen settings model per domain (relay topology, database, NATS,
RabbitMQ, logging), each readable from environment variables and from optional
YAML files with conf.d support.

Configuration precedence (highest to lowest):
    1. init kwargs (testing/overrides)
    2. YAML/conf.d files
    3. Environment variables
    4. .env file
    5. secrets_dir
"""

from __future__ import annotations

from .loader import (
    clear_all_caches,
    get_db_settings,
    get_logging_settings,
    get_nats_settings,
    get_rabbit_settings,
    get_relay_settings,
)
from .logs import LoggingSettings
from .nats import NatsSettings
from .postgres import PostgresSettings
from .rabbit import RabbitSettings
from .relay import OutboxConfig, RelaySettings, WatcherConfig

__all__ = [
    "LoggingSettings",
    "NatsSettings",
    "OutboxConfig",
    "PostgresSettings",
    "RabbitSettings",
    "RelaySettings",
    "WatcherConfig",
    "clear_all_caches",
    "get_db_settings",
    "get_logging_settings",
    "get_nats_settings",
    "get_rabbit_settings",
    "get_relay_settings",
]
