"""Backfill plan models.

A plan is the immutable intent of a backfill: one target, one contiguous
window, and the ordered chunks that cover it.  Plan, chunk, and token
identifiers are derived from content hashes so that planning identical input
always reproduces identical identifiers.
"""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum
from urllib.parse import urlsplit

from pydantic import BaseModel, Field, model_validator

from backfill_engine.options import BackfillLimits, BackfillPolicy

PLAN_SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def compute_deterministic_id(*parts: str) -> str:
    """Derive a deterministic SHA-256 hex ID from an ordered sequence of strings.

    Used for plan ids, chunk ids, and idempotency tokens so that identical
    inputs always yield the same identifiers.
    """
    hasher = hashlib.sha256()
    for part in parts:
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")  # Null-byte domain separator prevents collisions
    return hasher.hexdigest()


def format_timestamp(value: datetime) -> str:
    """Render *value* as a UTC ISO-8601 string with millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ChunkStatus(str, Enum):
    """Lifecycle of a single chunk."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"


class BackfillStatus(str, Enum):
    """Lifecycle shared by plans and runs."""

    PLANNED = "planned"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({BackfillStatus.COMPLETED, BackfillStatus.FAILED, BackfillStatus.CANCELLED})


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class EnvironmentFingerprint(BaseModel):
    """The database environment a plan is bound to."""

    origin: str = Field(..., min_length=1, description="Scheme, host and port of the endpoint.")
    database: str = Field(..., min_length=1)

    @classmethod
    def from_endpoint(cls, url: str, database: str) -> EnvironmentFingerprint:
        """Build a fingerprint from a database URL, ignoring path and credentials."""
        parts = urlsplit(url)
        if not parts.scheme or not parts.hostname:
            raise ValueError(f"Cannot fingerprint endpoint without scheme and host: {url!r}")
        origin = f"{parts.scheme.lower()}://{parts.hostname.lower()}"
        if parts.port is not None:
            origin += f":{parts.port}"
        return cls(origin=origin, database=database)

    def describe(self) -> str:
        return f"{self.origin}/{self.database}"


class PlanOptions(BaseModel):
    """Execution options resolved when the plan was created."""

    chunk_hours: float = Field(..., gt=0.0)
    max_parallel_chunks: int = Field(..., ge=1)
    max_retries_per_chunk: int = Field(..., ge=1)
    require_idempotency_token: bool
    time_column: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Chunk and plan
# ---------------------------------------------------------------------------


class BackfillChunk(BaseModel):
    """A contiguous ``[start, end)`` sub-window of a plan."""

    id: str = Field(..., min_length=1)
    start: datetime = Field(..., description="Inclusive lower bound.")
    end: datetime = Field(..., description="Exclusive upper bound.")
    status: ChunkStatus = ChunkStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    idempotency_token: str = Field(..., min_length=1)
    sql_template: str = Field(..., description="Statement rendered for this chunk's window and token.")
    last_error: str | None = None

    @model_validator(mode="after")
    def validate_window(self) -> BackfillChunk:
        if self.start >= self.end:
            raise ValueError(f"Chunk {self.id} start ({self.start}) must be < end ({self.end}).")
        return self


class BackfillPlanState(BaseModel):
    """Persisted, immutable intent of one backfill."""

    schema_version: int = PLAN_SCHEMA_VERSION
    plan_id: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    created_at: datetime
    status: BackfillStatus = BackfillStatus.PLANNED
    start: datetime
    end: datetime
    chunks: list[BackfillChunk] = Field(default_factory=list)
    options: PlanOptions
    policy: BackfillPolicy
    limits: BackfillLimits
    environment: EnvironmentFingerprint | None = Field(
        default=None,
        description="Bound environment, or None for a plan created offline.",
    )
    forced_large_window: bool = False
    statement_template: str = Field(..., description="The unrendered statement template.")

    @model_validator(mode="after")
    def validate_chunks_cover_window(self) -> BackfillPlanState:
        if self.start >= self.end:
            raise ValueError(f"Plan window start ({self.start}) must be < end ({self.end}).")
        if not self.chunks:
            return self
        if self.chunks[0].start != self.start or self.chunks[-1].end != self.end:
            raise ValueError("Plan chunks must cover the plan window exactly.")
        for previous, current in zip(self.chunks, self.chunks[1:]):
            if previous.end != current.start:
                raise ValueError(f"Chunks {previous.id} and {current.id} are not contiguous.")
        return self

    def chunk_by_id(self, chunk_id: str) -> BackfillChunk | None:
        for chunk in self.chunks:
            if chunk.id == chunk_id:
                return chunk
        return None
