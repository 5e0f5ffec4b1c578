"""Database infrastructure."""

from __future__ import annotations

from .session import create_engine, database_context, init_database

__all__ = ["create_engine", "database_context", "init_database"]
