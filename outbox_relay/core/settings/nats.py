"""NATS messaging settings for FastStream."""

from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .yaml_sources import create_nats_yaml_source


class NatsSettings(BaseSettings):
    """NATS connection and subject settings.

    Environment variables use NATS_ prefix.
    Example: NATS_URL=nats://nats:4222, NATS_SUBJECT=centrifugo
    """

    url: str = Field(
        default="nats://localhost:4222",
        min_length=1,
        description="NATS server URL (comma-separate several servers).",
    )
    subject: str = Field(
        default="centrifugo",
        min_length=1,
        max_length=255,
        pattern=r"^[a-zA-Z0-9_.-]+$",
        description="Subject prefix for broadcast envelopes.",
    )
    messages_namespace: str = Field(
        default="messages",
        min_length=1,
        max_length=100,
        pattern=r"^[a-zA-Z0-9_-]+$",
        description="Namespace used in broadcast subjects and channel names.",
    )
    connection_name: str = Field(
        default="outbox-relay",
        min_length=1,
        max_length=100,
        description="Client name reported to the NATS server.",
    )
    connection_timeout: float = Field(
        default=10.0,
        ge=1.0,
        le=300.0,
        description="Timeout in seconds for the initial NATS connection.",
    )
    startup_retry_attempts: int = Field(
        default=3, ge=1, le=20, description="Connection attempts during startup."
    )
    graceful_timeout: float = Field(
        default=5.0,
        ge=0.1,
        le=300.0,
        description="Seconds to wait for pending publishes when closing the broker.",
    )

    model_config = SettingsConfigDict(
        env_prefix="NATS_",
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
            create_nats_yaml_source(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @property
    def servers(self) -> list[str]:
        """Server URLs as a list, as accepted by NatsBroker."""
        return [server.strip() for server in self.url.split(",") if server.strip()]
