"""Backfill run models: the mutable record of what actually happened."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from backfill_engine.models.plan import BackfillStatus, ChunkStatus, PlanOptions

RUN_SCHEMA_VERSION = 1


class BackfillRunChunkState(BaseModel):
    """Runtime state of one chunk inside a run."""

    id: str
    start: datetime
    end: datetime
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    idempotency_token: str
    sql_template: str
    last_error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rows_written: int = Field(default=0, ge=0)


class OverrideRecord(BaseModel):
    """Audit entry for a ``--force-*`` override applied to a run."""

    flag: str
    reason: str
    at: datetime


class BackfillRunState(BaseModel):
    """Persisted execution record of a plan."""

    schema_version: int = RUN_SCHEMA_VERSION
    plan_id: str
    target: str
    status: BackfillStatus
    created_at: datetime
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    last_error: str | None = None
    replay_done: bool = False
    replay_failed: bool = False
    compatibility_token: str
    options: PlanOptions
    chunks: list[BackfillRunChunkState] = Field(default_factory=list)
    overrides: list[OverrideRecord] = Field(default_factory=list)

    def chunk_by_id(self, chunk_id: str) -> BackfillRunChunkState | None:
        for chunk in self.chunks:
            if chunk.id == chunk_id:
                return chunk
        return None
