"""Run the relay."""

import os
import sys

import click

from outbox_relay.cli.utils import relay_command, relay_report, status
from outbox_relay.core.settings import clear_all_caches
from outbox_relay.core.settings.yaml_sources import SHARED_CONFIG_DIR_ENV


@click.command()
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, dir_okay=True),
    default=None,
    help="Directory holding relay.yaml, db.yaml, nats.yaml, ... (sets RELAY_CONFIG_DIR).",
)
@click.option(
    "--health/--no-health",
    default=None,
    help="Serve GET /health (defaults to RELAY_HEALTH_ENABLED).",
)
@relay_command("Relay failed to start")
async def run(config_dir: str | None, health: bool | None) -> None:
    """Replay outbox backlogs and relay live changes until interrupted.

    \b
    SIGINT/SIGTERM start a graceful drain; a second signal forces exit.
    Exits with status 1 if a watcher failed or the drain did not finish.
    """
    if config_dir:
        os.environ[SHARED_CONFIG_DIR_ENV] = config_dir
        clear_all_caches()

    from outbox_relay.app.relay import run_relay
    from outbox_relay.infra.logging.config import setup_logging

    setup_logging(force=bool(config_dir))

    status("info", "Starting outbox relay...")
    report = await run_relay(health=health)

    relay_report(report)
    if not report.ok:
        sys.exit(1)
