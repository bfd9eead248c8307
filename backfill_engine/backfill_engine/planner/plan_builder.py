"""Plan builder: turns a target and a time window into a durable, chunked plan.

Plans are deterministic.  The plan id is a content hash of the planning
intent (target, window, chunk size, time column, statement template), and
chunk ids and idempotency tokens are derived from the plan id plus the chunk
boundaries.  Planning identical input twice therefore yields the same plan,
and ``plan`` behaves as create-or-load.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from pydantic import BaseModel

from backfill_engine.errors import BackfillConfigError
from backfill_engine.models.plan import (
    BackfillChunk,
    BackfillPlanState,
    BackfillStatus,
    EnvironmentFingerprint,
    PlanOptions,
    compute_deterministic_id,
    format_timestamp,
    utcnow,
)
from backfill_engine.options import BackfillPluginOptions
from backfill_engine.planner.sql_template import DEFAULT_TEMPLATE, render_template, validate_template
from backfill_engine.state.store import BackfillStateStore

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Fields that describe the planning intent.  created_at and status are
# excluded so a re-plan can be compared against the stored document.
_IDENTITY_EXCLUDE = {"created_at", "status"}


class BuildBackfillPlanOutput(BaseModel):
    """Result of :func:`build_backfill_plan`."""

    plan: BackfillPlanState
    plan_path: Path
    existed: bool


# ---------------------------------------------------------------------------
# Window resolution
# ---------------------------------------------------------------------------


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def resolve_window(
    start: datetime | None,
    end: datetime | None,
    options: BackfillPluginOptions,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Return the explicit window, or the implicit default when policy allows it.

    The implicit window ends at the current hour and spans
    ``defaults.default_window_hours``.
    """
    if start is not None and end is not None:
        return ensure_utc(start), ensure_utc(end)

    if options.policy.require_explicit_window:
        raise BackfillConfigError(
            "An explicit backfill window is required (policy.require_explicit_window). " "Pass both --from and --to."
        )

    span = timedelta(hours=options.defaults.default_window_hours)
    if end is None:
        end = ensure_utc(now).replace(minute=0, second=0, microsecond=0)
        if start is not None and ensure_utc(start) >= end:
            end = ensure_utc(start) + span
    end = ensure_utc(end)
    resolved_start = ensure_utc(start) if start is not None else end - span
    logger.info("Using implicit backfill window %s -> %s", resolved_start, end)
    return resolved_start, end


def ensure_window_within_limits(
    start: datetime,
    end: datetime,
    options: BackfillPluginOptions,
    *,
    force_large_window: bool,
) -> float:
    """Validate the window and return its duration in hours."""
    if end <= start:
        raise BackfillConfigError("Invalid backfill window. Expected --to to be after --from.")

    duration_hours = (end - start).total_seconds() / 3600
    max_hours = options.limits.max_window_hours
    if duration_hours > max_hours:
        if not force_large_window:
            raise BackfillConfigError(
                f"Requested window ({duration_hours:.2f} hours) exceeds limits.max_window_hours={max_hours:g}. "
                "Retry with --force-large-window to acknowledge risk."
            )
        logger.warning(
            "Window of %.2f hours exceeds limits.max_window_hours=%g; forced by --force-large-window",
            duration_hours,
            max_hours,
        )
    return duration_hours


# ---------------------------------------------------------------------------
# Chunking
# ---------------------------------------------------------------------------


def compute_plan_id(
    target: str,
    start: datetime,
    end: datetime,
    chunk_hours: float,
    time_column: str,
    statement_template: str,
) -> str:
    return compute_deterministic_id(
        "plan",
        target,
        format_timestamp(start),
        format_timestamp(end),
        f"{chunk_hours:g}",
        time_column,
        statement_template,
    )[:16]


def compute_chunk_identity(plan_id: str, start: datetime, end: datetime) -> tuple[str, str]:
    """Return ``(chunk_id, idempotency_token)`` for one chunk boundary pair."""
    start_ts = format_timestamp(start)
    end_ts = format_timestamp(end)
    chunk_id = compute_deterministic_id("chunk", plan_id, start_ts, end_ts)[:16]
    token = compute_deterministic_id("token", plan_id, start_ts, end_ts)
    return chunk_id, token


def build_chunks(
    *,
    plan_id: str,
    target: str,
    start: datetime,
    end: datetime,
    chunk_hours: float,
    time_column: str,
    statement_template: str,
) -> list[BackfillChunk]:
    """Slice ``[start, end)`` into consecutive chunks of *chunk_hours*.

    The final chunk is truncated to *end*, so the union of all chunks is
    exactly the plan window.
    """
    step = timedelta(hours=chunk_hours)
    chunks: list[BackfillChunk] = []
    current = start
    while current < end:
        following = min(current + step, end)
        chunk_id, token = compute_chunk_identity(plan_id, current, following)
        rendered = render_template(
            statement_template,
            {
                "target": target,
                "start": format_timestamp(current),
                "end": format_timestamp(following),
                "time_column": time_column,
                "plan_id": plan_id,
                "chunk_id": chunk_id,
                "idempotency_token": token,
            },
        )
        chunks.append(
            BackfillChunk(
                id=chunk_id,
                start=current,
                end=following,
                idempotency_token=token,
                sql_template=rendered,
            )
        )
        current = following
    return chunks


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------


def build_backfill_plan(
    *,
    target: str,
    store: BackfillStateStore,
    options: BackfillPluginOptions,
    start: datetime | None = None,
    end: datetime | None = None,
    chunk_hours: float | None = None,
    time_column: str | None = None,
    sql_template: str | None = None,
    force_large_window: bool = False,
    environment: EnvironmentFingerprint | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> BuildBackfillPlanOutput:
    """Build, persist, and return a backfill plan.

    Parameters
    ----------
    target:
        Fully-qualified object identifier (``database.table``).
    store:
        State store the plan is persisted into.
    options:
        Fully-resolved plugin options.
    start, end:
        The window.  Both may be omitted only when
        ``policy.require_explicit_window`` is disabled.
    chunk_hours:
        Chunk size override; defaults to ``defaults.chunk_hours``.
    time_column:
        Time column override; defaults to ``defaults.time_column``.
    sql_template:
        Statement template override; defaults to an ``INSERT ... SELECT``
        over the chunk window.
    force_large_window:
        Acknowledge a window longer than ``limits.max_window_hours``.
    environment:
        Fingerprint of the live database, or ``None`` when planning offline.

    Returns
    -------
    BuildBackfillPlanOutput
        The plan, its path, and whether an identical plan already existed.

    Raises
    ------
    BackfillConfigError
        On any validation failure, or when a plan with the same id exists but
        describes a different intent.
    """
    if not target.strip():
        raise BackfillConfigError("Backfill target must not be empty.")

    resolved_chunk_hours = chunk_hours if chunk_hours is not None else options.defaults.chunk_hours
    if resolved_chunk_hours <= 0:
        raise BackfillConfigError(f"Chunk size must be positive, got {resolved_chunk_hours:g}h.")
    if resolved_chunk_hours * 60 < options.limits.min_chunk_minutes:
        raise BackfillConfigError(
            f"Chunk size {resolved_chunk_hours:g}h is below limits.min_chunk_minutes="
            f"{options.limits.min_chunk_minutes:g}."
        )

    resolved_start, resolved_end = resolve_window(start, end, options, clock())
    ensure_window_within_limits(resolved_start, resolved_end, options, force_large_window=force_large_window)
    forced = (resolved_end - resolved_start).total_seconds() / 3600 > options.limits.max_window_hours

    resolved_time_column = time_column or options.defaults.time_column
    if not _IDENTIFIER.match(resolved_time_column):
        raise BackfillConfigError(f"Invalid time column {resolved_time_column!r}. Expected a plain identifier.")

    template = sql_template if sql_template is not None else DEFAULT_TEMPLATE
    validate_template(template, require_idempotency_token=options.defaults.require_idempotency_token)

    plan_id = compute_plan_id(
        target, resolved_start, resolved_end, resolved_chunk_hours, resolved_time_column, template
    )
    plan = BackfillPlanState(
        plan_id=plan_id,
        target=target,
        created_at=clock(),
        status=BackfillStatus.PLANNED,
        start=resolved_start,
        end=resolved_end,
        chunks=build_chunks(
            plan_id=plan_id,
            target=target,
            start=resolved_start,
            end=resolved_end,
            chunk_hours=resolved_chunk_hours,
            time_column=resolved_time_column,
            statement_template=template,
        ),
        options=PlanOptions(
            chunk_hours=resolved_chunk_hours,
            max_parallel_chunks=options.defaults.max_parallel_chunks,
            max_retries_per_chunk=options.defaults.max_retries_per_chunk,
            require_idempotency_token=options.defaults.require_idempotency_token,
            time_column=resolved_time_column,
        ),
        policy=options.policy,
        limits=options.limits,
        environment=environment,
        forced_large_window=forced,
        statement_template=template,
    )

    plan_path = store.paths(plan_id).plan_path
    existing = store.read_plan(plan_id)
    if existing is not None:
        if existing.model_dump(mode="json", exclude=_IDENTITY_EXCLUDE) != plan.model_dump(
            mode="json", exclude=_IDENTITY_EXCLUDE
        ):
            raise BackfillConfigError(
                f"Backfill plan already exists at {plan_path} but differs from current planning output. "
                "Remove it if you intentionally changed planning parameters."
            )
        logger.info("Backfill plan %s already exists; reusing it", plan_id)
        return BuildBackfillPlanOutput(plan=existing, plan_path=plan_path, existed=True)

    store.write_plan(plan)
    logger.info("Created backfill plan %s for %s with %d chunk(s)", plan_id, target, len(plan.chunks))
    return BuildBackfillPlanOutput(plan=plan, plan_path=plan_path, existed=False)
