"""Terminal output shared by the relay commands."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from collections.abc import Mapping

    from outbox_relay.core.settings import RelaySettings
    from outbox_relay.infra.outbox.orchestrator import RelayReport

_MARKS = {
    "ok": ("✓", "green"),
    "failed": ("✗", "red"),
    "warning": ("⚠", "yellow"),
    "info": ("ℹ", "blue"),
}


def status(kind: str, message: str) -> None:
    """Print one marked line; ``failed`` lines go to stderr."""
    mark, colour = _MARKS[kind]
    click.secho(f"{mark} {message}", fg=colour, err=kind == "failed")


def topology(relay: RelaySettings) -> None:
    """Print the bus and the outbox tables each watcher owns."""
    click.secho(f"\nBus: {relay.bus}", fg="cyan", bold=True)
    for watcher in relay.watchers:
        click.echo(f"  watcher {watcher.name}")
        for outbox in watcher.outboxes:
            click.echo(
                f"    - {outbox.kind}: table={outbox.table} encoder={outbox.encoder} "
                f"channel={outbox.notify_channel}"
            )


def pending_rows(counts: Mapping[str, int]) -> None:
    click.secho("\nPending outbox rows", fg="cyan", bold=True)
    for table, count in counts.items():
        click.echo(f"  {table}: {count}")
    click.echo(f"  total: {sum(counts.values())}")


def relay_report(report: RelayReport) -> None:
    """Print how the relay stopped: outcome first, then each watcher failure."""
    if report.ok:
        status("ok", f"Relay stopped gracefully ({report.duration:.1f}s)")
        return
    if report.outcome.value != "graceful":
        status("warning", f"Relay shutdown {report.outcome.value}")
    for failure in report.failures:
        status("failed", f"Watcher failed: {failure}")


__all__ = ["pending_rows", "relay_report", "status", "topology"]
