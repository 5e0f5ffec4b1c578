"""Health endpoints.

- ``GET /health``: plain-text liveness probe, ``healthy`` while the process runs
- ``GET /health/watchers``: phase and counters of every outbox watcher
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from outbox_relay.features.health.schemas import WatcherStatus, WatchersResponse

if TYPE_CHECKING:
    from outbox_relay.infra.outbox.watcher import OutboxWatcher

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", response_class=PlainTextResponse, summary="Liveness probe")
async def health() -> str:
    return "healthy"


@router.get("/watchers", response_model=WatchersResponse, summary="Outbox watcher status")
async def watchers(request: Request) -> WatchersResponse:
    relay_watchers: list[OutboxWatcher] = getattr(request.app.state, "watchers", [])
    return WatchersResponse(
        watchers=[
            WatcherStatus(
                name=watcher.name,
                kinds=watcher.kinds,
                phase=watcher.phase.value,
                **watcher.stats.as_dict(),
            )
            for watcher in relay_watchers
        ]
    )
