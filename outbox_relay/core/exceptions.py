"""Exception hierarchy for the outbox relay.

The relay separates failures into two families:

- Recoverable, per-record problems (``OutboxReadError``, ``EncodeError``):
  logged with the record identity and skipped. The row stays in the table and
  is picked up again on the next backlog replay.
- Fatal, per-watcher problems (``DeliveryError``, ``StorageError``,
  ``StreamClosedError``): they end the watcher and make the orchestrator stop
  the whole relay.
- Startup problems (``ConfigurationError``, ``StartupConnectionError``): the
  process stops before any watcher is started.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from outbox_relay.infra.outbox.models import IdentityKey


class RelayError(Exception):
    """Base relay exception.

    Attributes:
        detail: Human-readable error message.
        extra: Context for structured logs (outbox kind, identity key, ...).
    """

    def __init__(self, detail: str, extra: dict[str, Any] | None = None) -> None:
        self.detail = detail
        self.extra = extra or {}
        super().__init__(detail)


class ConfigurationError(RelayError):
    """Raised when watcher or outbox configuration cannot be turned into a relay."""


class StartupConnectionError(RelayError):
    """The database or the messaging bus could not be reached at startup."""

    def __init__(self, target: str, attempts: int, cause: BaseException) -> None:
        self.target = target
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Could not connect to {target} after {attempts} attempt(s): {cause}",
            extra={"target": target, "attempts": attempts},
        )


class OutboxReadError(RelayError):
    """A single backlog row or change notification could not be decoded."""


class EncodeError(RelayError):
    """An envelope encoder could not produce bytes from a stored record."""

    def __init__(self, detail: str, key: IdentityKey | None = None) -> None:
        self.key = key
        super().__init__(detail, extra={"identity": str(key)} if key else None)


class PublishError(RelayError):
    """One delivery attempt to the messaging bus failed."""

    def __init__(self, destination: str, cause: BaseException | None = None) -> None:
        self.destination = destination
        self.cause = cause
        reason = f": {cause}" if cause else ""
        super().__init__(
            f"Failed to publish to {destination!r}{reason}",
            extra={"destination": destination},
        )


class DeliveryError(RelayError):
    """Publishing an identified outbox record failed.

    Fatal to the watcher that raised it. The record is left in the table.
    """

    def __init__(self, kind: str, key: IdentityKey, destination: str) -> None:
        self.kind = kind
        self.key = key
        self.destination = destination
        super().__init__(
            f"Delivery of {kind} record {key} to {destination!r} failed",
            extra={"kind": kind, "identity": str(key), "destination": destination},
        )


class StorageError(RelayError):
    """The outbox table could not be read from or deleted from."""


class StreamClosedError(RelayError):
    """A live change subscription ended while the relay was still running."""

    def __init__(self, kind: str) -> None:
        self.kind = kind
        super().__init__(f"Change stream for {kind} outbox closed", extra={"kind": kind})


__all__ = [
    "ConfigurationError",
    "DeliveryError",
    "EncodeError",
    "OutboxReadError",
    "PublishError",
    "RelayError",
    "StartupConnectionError",
    "StorageError",
    "StreamClosedError",
]
