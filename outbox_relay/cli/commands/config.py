"""Configuration management commands."""

import json
import sys
from typing import Any

import click
from pydantic import ValidationError
import yaml

from outbox_relay.cli.utils import status, topology
from outbox_relay.core.settings import (
    get_db_settings,
    get_logging_settings,
    get_nats_settings,
    get_rabbit_settings,
    get_relay_settings,
)

_LOADERS = {
    "relay": get_relay_settings,
    "database": get_db_settings,
    "nats": get_nats_settings,
    "rabbit": get_rabbit_settings,
    "logging": get_logging_settings,
}


def _load_all() -> dict[str, Any]:
    return {name: loader() for name, loader in _LOADERS.items()}


def _mask(data: dict[str, Any], show_secrets: bool) -> dict[str, Any]:
    if show_secrets:
        return data
    hidden = {"password", "dsn", "amqp_uri", "url", "DATABASE_URL", "AMQP_URI"}
    return {key: "***" if key in hidden and value else value for key, value in data.items()}


@click.group(name="config")
def config() -> None:
    """Configuration management commands."""


@config.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["json", "yaml"]),
    default="yaml",
    help="Output format",
)
@click.option(
    "--show-secrets/--hide-secrets",
    default=False,
    help="Show sensitive values (passwords, connection URLs)",
)
def show(output_format: str, show_secrets: bool) -> None:
    """Display the effective configuration."""
    try:
        settings = _load_all()
    except ValidationError as e:
        status("failed", f"Invalid configuration:\n{e}")
        sys.exit(1)

    if not show_secrets:
        status("warning", "Secrets are hidden. Use --show-secrets to display them.")

    config_dict = {
        name: _mask(obj.model_dump(mode="json"), show_secrets) for name, obj in settings.items()
    }
    if output_format == "json":
        click.echo(json.dumps(config_dict, indent=2))
    else:
        click.echo(yaml.safe_dump(config_dict, sort_keys=False))


@config.command()
def validate() -> None:
    """Validate every configuration domain and print the relay topology."""
    status("info", "Validating configuration...")
    failed = False
    for name, loader in _LOADERS.items():
        try:
            loader()
        except ValidationError as e:
            failed = True
            status("failed", f"{name}: {e}")
        else:
            status("ok", f"{name}: ok")

    if failed:
        sys.exit(1)

    topology(get_relay_settings())
