"""Outbox table management commands.

Example:bash
    # Create outbox tables and notify triggers (idempotent)
    outbox-relay db install

    # Show how many rows are waiting in each outbox
    outbox-relay db pending
"""

import click

from outbox_relay.cli.utils import pending_rows, relay_command, status
from outbox_relay.core.settings import get_db_settings, get_relay_settings


@click.group(name="db")
def db() -> None:
    """Outbox table management commands."""


@db.command()
@relay_command("Install failed")
async def install() -> None:
    """Create outbox tables, the notify function and triggers."""
    from outbox_relay.app.relay import install_outboxes
    from outbox_relay.infra.database import database_context

    relay_settings = get_relay_settings()
    db_settings = get_db_settings()
    status("info", f"Installing {len(relay_settings.outboxes)} outbox table(s) in {db_settings.name}...")

    async with database_context(db_settings) as engine:
        tables = await install_outboxes(engine, relay_settings, db_settings)

    for table in tables:
        status("ok", f"{table}: table and trigger installed")


@db.command()
@relay_command("Could not read outbox tables")
async def pending() -> None:
    """Show the number of undelivered rows per outbox table."""
    from outbox_relay.app.relay import pending_counts
    from outbox_relay.infra.database import database_context

    relay_settings = get_relay_settings()
    db_settings = get_db_settings()

    async with database_context(db_settings) as engine:
        counts = await pending_counts(engine, relay_settings, db_settings)

    pending_rows(counts)
