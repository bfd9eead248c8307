"""Pydantic models for backfill plans, runs, and derived summaries."""

from backfill_engine.models.plan import (
    BackfillChunk,
    BackfillPlanState,
    BackfillStatus,
    ChunkStatus,
    EnvironmentFingerprint,
    PlanOptions,
    compute_deterministic_id,
    format_timestamp,
)
from backfill_engine.models.run import BackfillRunChunkState, BackfillRunState, OverrideRecord
from backfill_engine.models.summary import BackfillStatusSummary, ChunkTotals, DoctorReport

__all__ = [
    "BackfillChunk",
    "BackfillPlanState",
    "BackfillRunChunkState",
    "BackfillRunState",
    "BackfillStatus",
    "BackfillStatusSummary",
    "ChunkStatus",
    "ChunkTotals",
    "DoctorReport",
    "EnvironmentFingerprint",
    "OverrideRecord",
    "PlanOptions",
    "compute_deterministic_id",
    "format_timestamp",
]
