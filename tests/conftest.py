"""Pytest configuration and shared fixtures.

Tests run without PostgreSQL or a message broker: outbox tables and the bus
are replaced by the in-memory doubles from ``outbox_relay.infra.outbox.testing``.

Organization:
    - Settings isolation: every test gets an empty config directory
    - Outbox fixtures: see ``fixtures/outbox_fixtures.py``
"""

from __future__ import annotations

import pytest

from fixtures.outbox_fixtures import (  # noqa: F401
    broadcast_binding,
    direct_binding,
    group_outbox,
    journal,
    messages_outbox,
    publisher,
    shutdown,
)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point every settings domain at an empty config directory."""
    from outbox_relay.core.settings import clear_all_caches

    config_dir = tmp_path / "conf"
    config_dir.mkdir()
    monkeypatch.setenv("RELAY_CONFIG_DIR", str(config_dir))
    for name in ("DB_CONFIG_DIR", "NATS_CONFIG_DIR", "RABBIT_CONFIG_DIR", "LOGGING_CONFIG_DIR"):
        monkeypatch.delenv(name, raising=False)
    clear_all_caches()
    yield config_dir
    clear_all_caches()
