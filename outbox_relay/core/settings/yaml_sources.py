"""Custom YAML config source with conf.d directory support.

Extends pydantic-settings YamlConfigSettingsSource to support:
- Main YAML file (e.g., conf/relay.yaml)
- conf.d directory merging (e.g., conf/relay.d/*.yaml)
- Alphabetical file ordering in conf.d

Directory resolution, highest priority first:
1. ``<DOMAIN>_CONFIG_DIR`` (e.g., ``DB_CONFIG_DIR``)
2. ``RELAY_CONFIG_DIR`` (shared, set by ``outbox-relay run --config-dir``)
3. ``conf`` relative to the working directory
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic_settings import YamlConfigSettingsSource

if TYPE_CHECKING:
    from pydantic_settings import BaseSettings

SHARED_CONFIG_DIR_ENV = "RELAY_CONFIG_DIR"


class ConfDYamlConfigSettingsSource(YamlConfigSettingsSource):
    """YAML settings source with conf.d directory support.

    Supports the standard Linux conf.d pattern:
    - conf/relay.yaml        (base configuration)
    - conf/relay.d/*.yaml    (override files, merged alphabetically)
    """

    def __init__(
        self,
        settings_cls: type[BaseSettings],
        yaml_file: str,
        confd_dir: str | None,
        config_dir_env: str,
        base_dir: str = "conf",
        yaml_file_encoding: str | None = "utf-8",
    ) -> None:
        """Initialize the conf.d YAML source.

        Args:
            settings_cls: The settings class being configured.
            yaml_file: Main YAML file name (e.g., "relay.yaml").
            confd_dir: conf.d subdirectory name (e.g., "relay.d"), or None to disable.
            config_dir_env: Environment variable to override base directory.
            base_dir: Default base directory for config files.
            yaml_file_encoding: File encoding for YAML files.
        """
        config_base = Path(
            os.getenv(config_dir_env) or os.getenv(SHARED_CONFIG_DIR_ENV) or base_dir
        )

        yaml_files: list[Path] = []

        main_file = config_base / yaml_file
        if main_file.exists():
            yaml_files.append(main_file)

        # Sorted for deterministic merge order
        if confd_dir:
            confd_path = config_base / confd_dir
            if confd_path.is_dir():
                yaml_files.extend(sorted(confd_path.glob("*.yaml")))
                yaml_files.extend(sorted(confd_path.glob("*.yml")))

        self._yaml_files = yaml_files

        super().__init__(
            settings_cls=settings_cls,
            yaml_file=yaml_files if yaml_files else None,
            yaml_file_encoding=yaml_file_encoding,
        )

    def __repr__(self) -> str:
        files_str = ", ".join(str(f) for f in self._yaml_files)
        return f"{self.__class__.__name__}(yaml_files=[{files_str}])"


def _domain_source(
    settings_cls: type[BaseSettings], domain: str, env_prefix: str
) -> ConfDYamlConfigSettingsSource:
    return ConfDYamlConfigSettingsSource(
        settings_cls,
        yaml_file=f"{domain}.yaml",
        confd_dir=f"{domain}.d",
        config_dir_env=f"{env_prefix}_CONFIG_DIR",
    )


def create_relay_yaml_source(settings_cls: type[BaseSettings]) -> ConfDYamlConfigSettingsSource:
    """Create YAML source for RelaySettings (conf/relay.yaml, conf/relay.d/*.yaml)."""
    return _domain_source(settings_cls, "relay", "RELAY")


def create_db_yaml_source(settings_cls: type[BaseSettings]) -> ConfDYamlConfigSettingsSource:
    """Create YAML source for PostgresSettings (conf/db.yaml, conf/db.d/*.yaml)."""
    return _domain_source(settings_cls, "db", "DB")


def create_nats_yaml_source(settings_cls: type[BaseSettings]) -> ConfDYamlConfigSettingsSource:
    """Create YAML source for NatsSettings (conf/nats.yaml, conf/nats.d/*.yaml)."""
    return _domain_source(settings_cls, "nats", "NATS")


def create_rabbit_yaml_source(settings_cls: type[BaseSettings]) -> ConfDYamlConfigSettingsSource:
    """Create YAML source for RabbitSettings (conf/rabbit.yaml, conf/rabbit.d/*.yaml)."""
    return _domain_source(settings_cls, "rabbit", "RABBIT")


def create_logging_yaml_source(settings_cls: type[BaseSettings]) -> ConfDYamlConfigSettingsSource:
    """Create YAML source for LoggingSettings (conf/logging.yaml, conf/logging.d/*.yaml)."""
    return _domain_source(settings_cls, "logging", "LOGGING")
