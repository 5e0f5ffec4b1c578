"""Logging infrastructure."""

from __future__ import annotations

from .config import complete, configure_logging, setup_logging, shutdown
from .formatters import JSONFormatter, TextFormatter

__all__ = [
    "JSONFormatter",
    "TextFormatter",
    "complete",
    "configure_logging",
    "setup_logging",
    "shutdown",
]
