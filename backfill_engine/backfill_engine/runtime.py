"""Entry points for running, resuming, cancelling, and inspecting backfills.

Each function takes the state store and resolved options explicitly; nothing
here reads process-wide configuration.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field

from backfill_engine.diagnostics import build_doctor_report, summarize_plan_status, summarize_run_status
from backfill_engine.errors import BackfillConfigError, BackfillOverlapError
from backfill_engine.executor.base import SQLExecutor
from backfill_engine.executor.coordinator import BackfillCoordinator, SimulationDirective, prepare_chunks_for_dispatch
from backfill_engine.executor.retry import RetryConfig
from backfill_engine.guard import compute_compatibility_token, ensure_environment_match, ensure_run_compatibility
from backfill_engine.models.plan import (
    BackfillChunk,
    BackfillPlanState,
    BackfillStatus,
    ChunkStatus,
    EnvironmentFingerprint,
    utcnow,
)
from backfill_engine.models.run import BackfillRunChunkState, BackfillRunState, OverrideRecord
from backfill_engine.models.summary import BackfillStatusSummary, DoctorReport
from backfill_engine.options import BackfillPluginOptions
from backfill_engine.state.lock import RunLock
from backfill_engine.state.store import BackfillStateStore

logger = logging.getLogger(__name__)

_OVERLAP_STATUSES = frozenset({BackfillStatus.RUNNING, BackfillStatus.PAUSED})


class ExecutionOptions(BaseModel):
    """Per-invocation execution flags."""

    replay_done: bool = False
    replay_failed: bool = False
    skip_failed: bool = Field(default=False, description="Mark failed chunks skipped instead of retrying them.")
    force_overlap: bool = False
    force_compatibility: bool = False
    force_environment: bool = False
    simulation: SimulationDirective | None = None

    @property
    def replays(self) -> bool:
        return self.replay_done or self.replay_failed


class ExecuteBackfillRunOutput(BaseModel):
    run: BackfillRunState
    status: BackfillStatusSummary
    run_path: Path
    event_path: Path
    noop: bool = False


class ChunkPreview(BaseModel):
    chunk_id: str
    start: datetime
    end: datetime
    attempts: int
    statement: str


class PreviewOutput(BaseModel):
    """Statements a run would execute, computed without touching state."""

    plan_id: str
    target: str
    chunks: list[ChunkPreview]
    skipped_chunk_ids: list[str] = Field(default_factory=list)


class CancelOutput(BaseModel):
    status: BackfillStatusSummary
    deferred: bool = Field(
        default=False,
        description="True when a live coordinator was asked to stop instead of the run being cancelled directly.",
    )


# ---------------------------------------------------------------------------
# Run state helpers
# ---------------------------------------------------------------------------


def _chunk_state_from_plan(chunk: BackfillChunk) -> BackfillRunChunkState:
    return BackfillRunChunkState(
        id=chunk.id,
        start=chunk.start,
        end=chunk.end,
        idempotency_token=chunk.idempotency_token,
        sql_template=chunk.sql_template,
    )


def create_run_state(
    plan: BackfillPlanState,
    options: BackfillPluginOptions,
    execution: ExecutionOptions,
    now: datetime,
) -> BackfillRunState:
    return BackfillRunState(
        plan_id=plan.plan_id,
        target=plan.target,
        status=BackfillStatus.PLANNED,
        created_at=now,
        started_at=now,
        updated_at=now,
        replay_done=execution.replay_done,
        replay_failed=execution.replay_failed,
        compatibility_token=compute_compatibility_token(plan, options),
        options=plan.options,
        chunks=[_chunk_state_from_plan(chunk) for chunk in plan.chunks],
    )


def merge_run_with_plan(run: BackfillRunState, plan: BackfillPlanState) -> None:
    """Rebuild the run's chunk list from the plan, keeping state for chunks present in both."""
    existing = {chunk.id: chunk for chunk in run.chunks}
    run.chunks = [existing.get(chunk.id) or _chunk_state_from_plan(chunk) for chunk in plan.chunks]
    run.options = plan.options


def _window(run: BackfillRunState) -> tuple[datetime, datetime] | None:
    if not run.chunks:
        return None
    return min(c.start for c in run.chunks), max(c.end for c in run.chunks)


def find_overlapping_runs(store: BackfillStateStore, plan: BackfillPlanState) -> list[BackfillRunState]:
    """Return other non-terminal runs on the same target whose window overlaps *plan*."""
    overlapping: list[BackfillRunState] = []
    for other in store.list_runs():
        if other.plan_id == plan.plan_id or other.target != plan.target:
            continue
        if other.status not in _OVERLAP_STATUSES:
            continue
        window = _window(other)
        if window is None:
            continue
        start, end = window
        if start < plan.end and plan.start < end:
            overlapping.append(other)
    return overlapping


def _ensure_no_overlap(
    store: BackfillStateStore,
    plan: BackfillPlanState,
    options: BackfillPluginOptions,
    execution: ExecutionOptions,
    now: datetime,
) -> OverrideRecord | None:
    if not options.policy.block_overlapping_runs:
        return None
    overlapping = find_overlapping_runs(store, plan)
    if not overlapping:
        return None
    ids = ", ".join(run.plan_id for run in overlapping)
    reason = f"Overlapping active run(s) detected for target {plan.target} (plan {ids})."
    if not execution.force_overlap:
        raise BackfillOverlapError(f"{reason} Retry with --force-overlap to override.")
    logger.warning("Override --force-overlap applied: %s", reason)
    return OverrideRecord(flag="--force-overlap", reason=reason, at=now)


def _validate_execution(execution: ExecutionOptions) -> None:
    if execution.replay_failed and execution.skip_failed:
        raise BackfillConfigError("--replay-failed and --skip-failed are mutually exclusive.")


# ---------------------------------------------------------------------------
# Run / resume
# ---------------------------------------------------------------------------


async def _execute(
    *,
    plan_id: str,
    store: BackfillStateStore,
    options: BackfillPluginOptions,
    executor: SQLExecutor | None,
    execution: ExecutionOptions,
    active_environment: EnvironmentFingerprint | None,
    lock_ttl_seconds: int,
    resume: bool,
    cancel_event: asyncio.Event | None,
    pause_event: asyncio.Event | None,
    handle_signals: bool,
    clock: Callable[[], datetime],
) -> ExecuteBackfillRunOutput:
    _validate_execution(execution)
    plan = store.load_plan(plan_id)
    paths = store.paths(plan_id)
    now = clock()

    overrides: list[OverrideRecord] = []
    env_override = ensure_environment_match(
        plan, active_environment, force_environment=execution.force_environment, now=now
    )
    if env_override is not None:
        overrides.append(env_override)

    lock = RunLock(paths.lock_path, ttl_seconds=lock_ttl_seconds)
    lock.acquire()
    try:
        run = store.read_run(plan_id)
        if run is None:
            if resume:
                raise BackfillConfigError(
                    f"Run state not found for plan {plan_id}. Start with backfill run before resume."
                )
            run = create_run_state(plan, options, execution, now)
        else:
            compat_override = ensure_run_compatibility(
                run, plan, options, force_compatibility=execution.force_compatibility, now=now
            )
            if compat_override is not None:
                merge_run_with_plan(run, plan)
                overrides.append(compat_override)

        overlap_override = _ensure_no_overlap(store, plan, options, execution, now)
        if overlap_override is not None:
            overrides.append(overlap_override)

        if run.status == BackfillStatus.CANCELLED and (not resume or not execution.replays):
            raise BackfillConfigError(
                f"Run is cancelled for plan {plan_id}. Re-enter it with backfill resume --replay-failed "
                "(or --replay-done), or inspect it with backfill doctor."
            )

        if run.status == BackfillStatus.COMPLETED and not execution.replays:
            logger.info("Run for plan %s already completed; nothing to do", plan_id)
            return ExecuteBackfillRunOutput(
                run=run,
                status=summarize_run_status(run, paths),
                run_path=paths.run_path,
                event_path=paths.event_path,
                noop=True,
            )

        store.clear_cancel(plan_id)
        run.replay_done = execution.replay_done
        run.replay_failed = execution.replay_failed
        run.overrides.extend(overrides)
        for record in overrides:
            store.append_event(plan_id, "override_applied", flag=record.flag, reason=record.reason)

        skipped = prepare_chunks_for_dispatch(
            run,
            replay_done=execution.replay_done,
            replay_failed=execution.replay_failed,
            skip_failed=execution.skip_failed,
        )
        for chunk_id in skipped:
            store.append_event(plan_id, "chunk_skipped", chunk_id=chunk_id)

        coordinator = BackfillCoordinator(
            plan=plan,
            run=run,
            store=store,
            executor=executor,
            retry=RetryConfig.from_defaults(options.defaults, plan.options.max_retries_per_chunk),
            max_parallel_chunks=plan.options.max_parallel_chunks,
            simulation=execution.simulation,
            cancel_event=cancel_event,
            pause_event=pause_event,
            heartbeat=lock.refresh,
            heartbeat_interval=lock_ttl_seconds / 3,
            clock=clock,
        )
        logger.info(
            "%s backfill plan %s (%d chunk(s), parallelism %d)",
            "Resuming" if resume else "Starting",
            plan_id,
            len(run.chunks),
            plan.options.max_parallel_chunks,
        )
        run = await coordinator.execute(handle_signals=handle_signals)
    finally:
        lock.release()

    return ExecuteBackfillRunOutput(
        run=run,
        status=summarize_run_status(run, paths),
        run_path=paths.run_path,
        event_path=paths.event_path,
    )


async def execute_backfill_run(
    *,
    plan_id: str,
    store: BackfillStateStore,
    options: BackfillPluginOptions,
    executor: SQLExecutor | None = None,
    execution: ExecutionOptions | None = None,
    active_environment: EnvironmentFingerprint | None = None,
    lock_ttl_seconds: int = 3600,
    cancel_event: asyncio.Event | None = None,
    pause_event: asyncio.Event | None = None,
    handle_signals: bool = False,
    clock: Callable[[], datetime] = utcnow,
) -> ExecuteBackfillRunOutput:
    """Start (or continue) executing a plan.

    A run that already completed is a no-op unless a replay flag is given.

    Raises
    ------
    BackfillConfigError
        Plan missing, invalid flags, or a cancelled run.
    BackfillEnvironmentError, BackfillCompatibilityError, BackfillOverlapError, BackfillLockError
        When a guard blocks the run.  The run state is not mutated.
    BackfillPersistenceError
        When a checkpoint could not be written.
    """
    return await _execute(
        plan_id=plan_id,
        store=store,
        options=options,
        executor=executor,
        execution=execution or ExecutionOptions(),
        active_environment=active_environment,
        lock_ttl_seconds=lock_ttl_seconds,
        resume=False,
        cancel_event=cancel_event,
        pause_event=pause_event,
        handle_signals=handle_signals,
        clock=clock,
    )


async def resume_backfill_run(
    *,
    plan_id: str,
    store: BackfillStateStore,
    options: BackfillPluginOptions,
    executor: SQLExecutor | None = None,
    execution: ExecutionOptions | None = None,
    active_environment: EnvironmentFingerprint | None = None,
    lock_ttl_seconds: int = 3600,
    cancel_event: asyncio.Event | None = None,
    pause_event: asyncio.Event | None = None,
    handle_signals: bool = False,
    clock: Callable[[], datetime] = utcnow,
) -> ExecuteBackfillRunOutput:
    """Resume an existing run.

    Done chunks are only re-executed with ``replay_done`` and failed chunks
    only with ``replay_failed``.  A cancelled run requires one of the two.
    """
    return await _execute(
        plan_id=plan_id,
        store=store,
        options=options,
        executor=executor,
        execution=execution or ExecutionOptions(),
        active_environment=active_environment,
        lock_ttl_seconds=lock_ttl_seconds,
        resume=True,
        cancel_event=cancel_event,
        pause_event=pause_event,
        handle_signals=handle_signals,
        clock=clock,
    )


def preview_backfill_run(
    *,
    plan_id: str,
    store: BackfillStateStore,
    execution: ExecutionOptions | None = None,
) -> PreviewOutput:
    """Return the statements a run would execute next, without touching state."""
    execution = execution or ExecutionOptions()
    _validate_execution(execution)
    plan = store.load_plan(plan_id)
    run = store.read_run(plan_id)

    if run is None:
        chunks = [_chunk_state_from_plan(chunk) for chunk in plan.chunks]
        skipped: list[str] = []
    else:
        draft = run.model_copy(deep=True)
        skipped = prepare_chunks_for_dispatch(
            draft,
            replay_done=execution.replay_done,
            replay_failed=execution.replay_failed,
            skip_failed=execution.skip_failed,
        )
        chunks = draft.chunks
        if run.status == BackfillStatus.COMPLETED and not execution.replays:
            chunks = []

    return PreviewOutput(
        plan_id=plan.plan_id,
        target=plan.target,
        chunks=[
            ChunkPreview(
                chunk_id=chunk.id,
                start=chunk.start,
                end=chunk.end,
                attempts=chunk.attempts,
                statement=chunk.sql_template,
            )
            for chunk in chunks
            if chunk.status == ChunkStatus.PENDING
        ],
        skipped_chunk_ids=skipped,
    )


# ---------------------------------------------------------------------------
# Cancel / status / doctor
# ---------------------------------------------------------------------------


def cancel_backfill_run(
    *,
    plan_id: str,
    store: BackfillStateStore,
    lock_ttl_seconds: int = 3600,
    clock: Callable[[], datetime] = utcnow,
) -> CancelOutput:
    """Cancel a run.

    When a live coordinator owns the plan, a cancel marker is written and the
    coordinator stops after in-flight attempts finish.  Otherwise the run is
    marked ``cancelled`` directly.
    """
    store.load_plan(plan_id)
    paths = store.paths(plan_id)
    run = store.read_run(plan_id)
    if run is None:
        raise BackfillConfigError(f"Run state not found for plan {plan_id}. Start with backfill run before cancel.")
    if run.status == BackfillStatus.COMPLETED:
        raise BackfillConfigError(f"Run already completed for plan {plan_id}; cannot cancel.")
    if run.status == BackfillStatus.CANCELLED:
        return CancelOutput(status=summarize_run_status(run, paths))

    lock = RunLock(paths.lock_path, ttl_seconds=lock_ttl_seconds)
    if lock.is_locked():
        store.request_cancel(plan_id)
        store.append_event(plan_id, "cancel_requested")
        logger.info("Cancel requested for live run of plan %s", plan_id)
        return CancelOutput(
            status=summarize_run_status(run, paths, active=True, cancel_requested=True),
            deferred=True,
        )

    with lock:
        run = store.read_run(plan_id) or run
        now = clock()
        run.status = BackfillStatus.CANCELLED
        run.completed_at = now
        run.updated_at = now
        run.last_error = "Cancelled by operator"
        for chunk in run.chunks:
            if chunk.status == ChunkStatus.RUNNING:
                chunk.status = ChunkStatus.PENDING
                chunk.attempts = max(chunk.attempts - 1, 0)
        store.write_run(run)
        store.append_event(plan_id, "run_cancelled")
    return CancelOutput(status=summarize_run_status(run, paths))


def get_backfill_status(
    *,
    plan_id: str,
    store: BackfillStateStore,
    lock_ttl_seconds: int = 3600,
) -> BackfillStatusSummary:
    plan = store.load_plan(plan_id)
    paths = store.paths(plan_id)
    run = store.read_run(plan_id)
    if run is None:
        return summarize_plan_status(plan, paths)
    return summarize_run_status(
        run,
        paths,
        active=RunLock(paths.lock_path, ttl_seconds=lock_ttl_seconds).is_locked(),
        cancel_requested=store.cancel_requested(plan_id),
    )


def get_backfill_doctor_report(
    *,
    plan_id: str,
    store: BackfillStateStore,
    options: BackfillPluginOptions,
    active_environment: EnvironmentFingerprint | None = None,
    lock_ttl_seconds: int = 3600,
    clock: Callable[[], datetime] = utcnow,
) -> DoctorReport:
    plan = store.load_plan(plan_id)
    paths = store.paths(plan_id)
    return build_doctor_report(
        plan,
        store.read_run(plan_id),
        paths,
        options,
        now=clock(),
        active=RunLock(paths.lock_path, ttl_seconds=lock_ttl_seconds).is_locked(),
        active_environment=active_environment,
    )
