"""Test fixtures for pytest.

This module re-exports commonly used test fixtures for easier importing.
"""

from .outbox_fixtures import (
    broadcast_binding,
    direct_binding,
    eventually,
    group_outbox,
    journal,
    messages_outbox,
    publisher,
    shutdown,
)

__all__ = [
    "broadcast_binding",
    "direct_binding",
    "eventually",
    "group_outbox",
    "journal",
    "messages_outbox",
    "publisher",
    "shutdown",
]
