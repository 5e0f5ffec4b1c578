"""Main CLI entry point for outbox-relay."""

import click

from outbox_relay.cli.commands import config, db, run
from outbox_relay.infra.logging.config import setup_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="outbox-relay")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Outbox relay - moves transactional outbox rows onto the message bus.

    \b
    Command Groups:
      run        Run the relay
      config     Show and validate configuration
      db         Outbox table management

    \b
    Quick Start:
      outbox-relay config validate   # Check configuration and topology
      outbox-relay db install        # Create outbox tables and triggers
      outbox-relay run               # Relay until interrupted
    """
    ctx.ensure_object(dict)


cli.add_command(run.run)
cli.add_command(config.config)
cli.add_command(db.db)


def main() -> None:
    """Entry point for CLI."""
    setup_logging()
    cli(obj={})


if __name__ == "__main__":
    main()
