"""Relay topology settings: which outbox tables are watched and how they are encoded."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .yaml_sources import create_relay_yaml_source

BusBackend = Literal["nats", "rabbit"]
EncoderName = Literal["direct", "broadcast", "frame"]
EventTypeName = Literal["message", "user_added", "user_removed", "generic_change"]
MethodName = Literal["publish", "broadcast"]

_IDENTIFIER = r"^[a-zA-Z_][a-zA-Z0-9_]*$"


class OutboxConfig(BaseModel):
    """One outbox table and the envelope its records are wrapped in."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str = Field(
        min_length=1,
        max_length=63,
        pattern=_IDENTIFIER,
        description="Outbox kind label used in logs (e.g. messages, group_operations).",
    )
    table: str = Field(min_length=1, max_length=63, pattern=_IDENTIFIER, description="Outbox table name.")
    encoder: EncoderName = Field(default="direct", description="Envelope encoder for this outbox.")
    channel: str | None = Field(
        default=None,
        max_length=63,
        pattern=_IDENTIFIER,
        description="LISTEN/NOTIFY channel. Defaults to '<table>_events'.",
    )
    subject_prefix: str | None = Field(
        default=None,
        description=(
            "Destination prefix. Defaults to 'chat' for direct/frame encoders "
            "and to the bus subject for the broadcast encoder."
        ),
    )
    namespace: str | None = Field(
        default=None,
        description="Broadcast namespace. Defaults to the bus messages namespace.",
    )
    event_type: EventTypeName = Field(default="message", description="Broadcast event type.")
    method: MethodName = Field(default="broadcast", description="Broadcast delivery method.")
    epoch_column: bool = Field(
        default=True,
        description="Whether the table has an epoch column that is part of the identity key.",
    )

    @property
    def notify_channel(self) -> str:
        """Effective NOTIFY channel name."""
        return self.channel or f"{self.table}_events"


class WatcherConfig(BaseModel):
    """A watcher and the outbox tables it owns."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1, max_length=63, description="Watcher name used in logs.")
    outboxes: list[OutboxConfig] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_kinds(self) -> WatcherConfig:
        kinds = [outbox.kind for outbox in self.outboxes]
        if len(kinds) != len(set(kinds)):
            msg = f"Watcher {self.name!r} declares the same outbox kind twice"
            raise ValueError(msg)
        return self


def _default_watchers() -> list[WatcherConfig]:
    return [
        WatcherConfig(
            name="messages",
            outboxes=[
                OutboxConfig(
                    kind="messages",
                    table="messages_outbox",
                    encoder="direct",
                    subject_prefix="chat",
                ),
                OutboxConfig(
                    kind="group_operations",
                    table="group_operations_outbox",
                    encoder="broadcast",
                    event_type="generic_change",
                ),
            ],
        )
    ]


class RelaySettings(BaseSettings):
    """Relay process settings.

    Environment variables use RELAY_ prefix.
    Example: RELAY_BUS=rabbit, RELAY_SHUTDOWN_TIMEOUT=15
    Watchers are usually configured in conf/relay.yaml; RELAY_WATCHERS accepts JSON.
    """

    bus: BusBackend = Field(default="nats", description="Messaging backend to publish to.")
    shutdown_timeout: float = Field(
        default=10.0,
        gt=0,
        le=300.0,
        description="Seconds to wait for watchers to drain after shutdown is requested.",
    )
    install_triggers: bool = Field(
        default=False,
        description="Create outbox tables and notify triggers at startup if missing.",
    )

    health_enabled: bool = Field(default=True, description="Serve GET /health.")
    health_host: str = Field(default="0.0.0.0", description="Health endpoint bind host.")
    health_port: int = Field(default=8080, ge=1, le=65535, description="Health endpoint bind port.")

    watchers: list[WatcherConfig] = Field(default_factory=_default_watchers, min_length=1)

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: Any,
        env_settings: Any,
        dotenv_settings: Any,
        file_secret_settings: Any,
    ) -> tuple[Any, ...]:
        """Customize settings source precedence: init > yaml > env > dotenv > secrets."""
        return (
            init_settings,
            create_relay_yaml_source(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _validate_topology(self) -> RelaySettings:
        names = [watcher.name for watcher in self.watchers]
        if len(names) != len(set(names)):
            msg = "Watcher names must be unique"
            raise ValueError(msg)

        tables = [outbox.table for watcher in self.watchers for outbox in watcher.outboxes]
        duplicates = sorted({table for table in tables if tables.count(table) > 1})
        if duplicates:
            msg = f"Outbox tables watched more than once: {', '.join(duplicates)}"
            raise ValueError(msg)
        return self

    @property
    def outboxes(self) -> list[OutboxConfig]:
        """All configured outboxes across watchers."""
        return [outbox for watcher in self.watchers for outbox in watcher.outboxes]
