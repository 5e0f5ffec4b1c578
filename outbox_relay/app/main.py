"""FastAPI application factory and the embedded health server."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI
import uvicorn

from outbox_relay.features.health import router as health_router

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from outbox_relay.infra.outbox.shutdown import ShutdownSignal
    from outbox_relay.infra.outbox.watcher import OutboxWatcher

logger = logging.getLogger(__name__)


def create_app(watchers: Sequence[OutboxWatcher] = ()) -> FastAPI:
    """Create the health application.

    Args:
        watchers: Watchers reported by ``GET /health/watchers``.
    """
    app = FastAPI(
        title="outbox-relay",
        summary="Transactional outbox relay",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.watchers = list(watchers)
    app.include_router(health_router)
    return app


class EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves OS signal handling to the relay."""

    def install_signal_handlers(self) -> None:
        return

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


async def run_health_server(app: FastAPI, shutdown: ShutdownSignal, *, host: str, port: int) -> None:
    """Serve ``app`` until shutdown is requested.

    Raises:
        RuntimeError: If the server could not start (e.g. port in use).
    """
    server = EmbeddedServer(
        uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False, lifespan="off")
    )

    async def _stop_on_shutdown() -> None:
        await shutdown.wait()
        server.should_exit = True

    stopper = asyncio.create_task(_stop_on_shutdown())
    logger.info("Health server starting", extra={"host": host, "port": port})
    try:
        await server.serve()
    except SystemExit as e:
        # uvicorn exits the process when it cannot bind.
        msg = f"Health server failed to start on {host}:{port}"
        raise RuntimeError(msg) from e
    finally:
        stopper.cancel()
    logger.info("Health server stopped")
