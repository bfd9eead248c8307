"""Derived, never-persisted views over plan and run state."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from backfill_engine.models.plan import BackfillStatus


class ChunkTotals(BaseModel):
    """Chunk counts per status."""

    total: int = 0
    pending: int = 0
    running: int = 0
    done: int = 0
    failed: int = 0
    skipped: int = 0


class BackfillStatusSummary(BaseModel):
    """Aggregate of a plan's progress, recomputed from the run state on demand."""

    plan_id: str
    target: str
    status: BackfillStatus
    totals: ChunkTotals
    attempts: int = 0
    rows_written: int = 0
    updated_at: datetime | None = None
    run_path: str
    event_path: str
    last_error: str | None = None
    active: bool = Field(default=False, description="True when a live coordinator holds the run lock.")
    cancel_requested: bool = False


class DoctorReport(BaseModel):
    """Diagnosis of a plan/run with recovery recommendations."""

    plan_id: str
    target: str
    status: BackfillStatus
    issue_codes: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    failed_chunk_ids: list[str] = Field(default_factory=list)
    stale_chunk_ids: list[str] = Field(default_factory=list)
    summary: BackfillStatusSummary

    @property
    def healthy(self) -> bool:
        return not self.issue_codes
