"""CLI helpers."""

from .output import pending_rows, relay_report, status, topology
from .runner import relay_command

__all__ = ["pending_rows", "relay_command", "relay_report", "status", "topology"]
