"""Health response schemas."""

from __future__ import annotations

from pydantic import BaseModel, Field


class WatcherStatus(BaseModel):
    name: str
    kinds: list[str]
    phase: str = Field(description="replaying_backlog | tailing_live | draining | stopped")
    replayed: int = 0
    delivered_live: int = 0
    skipped: int = 0
    ignored: int = 0
    duplicates: int = 0


class WatchersResponse(BaseModel):
    watchers: list[WatcherStatus]
