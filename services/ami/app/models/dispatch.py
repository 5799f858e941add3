from __future__ import annotations

from pydantic import BaseModel, Field


class DispatchRunRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1, le=500)
    recover_stale: bool = False


class DispatchRunResponse(BaseModel):
    worker_id: str
    channel: str
    claimed: int
    acked: int
    retried: int
    dead_lettered: int
    failed: int
    skipped: int
    recovered: int = 0
    item_ids: list[int] = Field(default_factory=list)
