"""Status summaries and doctor diagnostics.

Everything here is read-only: summaries are recomputed from the persisted run
(or plan) on every call and the doctor never mutates state.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from backfill_engine.guard import compute_compatibility_token
from backfill_engine.models.plan import BackfillPlanState, BackfillStatus, ChunkStatus, EnvironmentFingerprint
from backfill_engine.models.run import BackfillRunState
from backfill_engine.models.summary import BackfillStatusSummary, ChunkTotals, DoctorReport
from backfill_engine.options import BackfillPluginOptions
from backfill_engine.state.store import BackfillPaths

COMMAND_PREFIX = "chkit backfill"

# ---------------------------------------------------------------------------
# Issue codes
# ---------------------------------------------------------------------------

ISSUE_REQUIRED_PENDING = "backfill_required_pending"
ISSUE_CHUNK_STUCK_RUNNING = "backfill_chunk_stuck_running"
ISSUE_CHUNK_FAILED_RETRY_EXHAUSTED = "backfill_chunk_failed_retry_exhausted"
ISSUE_RUN_FAILED = "backfill_run_failed"
ISSUE_RUN_CANCELLED = "backfill_run_cancelled"
ISSUE_RUN_PAUSED = "backfill_run_paused"
ISSUE_PLAN_STALE = "backfill_plan_stale"
ISSUE_ENVIRONMENT_MISMATCH = "backfill_environment_mismatch"

NO_REMEDIATION = "No remediation required."


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def summarize_run_status(
    run: BackfillRunState,
    paths: BackfillPaths,
    *,
    active: bool = False,
    cancel_requested: bool = False,
) -> BackfillStatusSummary:
    totals = ChunkTotals(total=len(run.chunks))
    attempts = 0
    rows_written = 0
    for chunk in run.chunks:
        attempts += chunk.attempts
        rows_written += chunk.rows_written
        field = chunk.status.value
        setattr(totals, field, getattr(totals, field) + 1)

    return BackfillStatusSummary(
        plan_id=run.plan_id,
        target=run.target,
        status=run.status,
        totals=totals,
        attempts=attempts,
        rows_written=rows_written,
        updated_at=run.updated_at,
        run_path=str(paths.run_path),
        event_path=str(paths.event_path),
        last_error=run.last_error,
        active=active,
        cancel_requested=cancel_requested,
    )


def summarize_plan_status(plan: BackfillPlanState, paths: BackfillPaths) -> BackfillStatusSummary:
    """Summary for a plan that has never been run."""
    count = len(plan.chunks)
    return BackfillStatusSummary(
        plan_id=plan.plan_id,
        target=plan.target,
        status=BackfillStatus.PLANNED,
        totals=ChunkTotals(total=count, pending=count),
        updated_at=plan.created_at,
        run_path=str(paths.run_path),
        event_path=str(paths.event_path),
    )


# ---------------------------------------------------------------------------
# Doctor
# ---------------------------------------------------------------------------


def build_doctor_report(
    plan: BackfillPlanState,
    run: BackfillRunState | None,
    paths: BackfillPaths,
    options: BackfillPluginOptions,
    *,
    now: datetime,
    active: bool = False,
    active_environment: EnvironmentFingerprint | None = None,
) -> DoctorReport:
    """Classify the state of *plan*/*run* into issue codes and recommendations.

    Parameters
    ----------
    plan:
        The plan under diagnosis.
    run:
        Its run state, or ``None`` when it was never executed.
    paths:
        On-disk locations for the plan (reported back in the summary).
    options:
        Current plugin options, used for staleness checks and thresholds.
    now:
        Reference time for the stuck-chunk threshold.
    active:
        Whether a live coordinator currently holds the run lock.
    active_environment:
        Fingerprint of the configured database, if any.
    """
    plan_id = plan.plan_id
    issues: list[str] = []
    recommendations: list[str] = []

    if run is None:
        summary = summarize_plan_status(plan, paths)
        issues.append(ISSUE_REQUIRED_PENDING)
        recommendations.append(f"Run: {COMMAND_PREFIX} run --plan-id {plan_id}")
        if plan.environment is not None and plan.environment != active_environment:
            issues.append(ISSUE_ENVIRONMENT_MISMATCH)
            recommendations.append(_environment_recommendation(plan, active_environment))
        return DoctorReport(
            plan_id=plan_id,
            target=plan.target,
            status=summary.status,
            issue_codes=issues,
            recommendations=recommendations,
            summary=summary,
        )

    summary = summarize_run_status(run, paths, active=active)
    failed_ids = [c.id for c in run.chunks if c.status == ChunkStatus.FAILED]
    stale_after = timedelta(minutes=options.limits.stale_running_minutes)
    stale_ids = [
        c.id
        for c in run.chunks
        if c.status == ChunkStatus.RUNNING
        and (not active or c.started_at is None or now - c.started_at > stale_after)
    ]

    if stale_ids:
        issues.append(ISSUE_CHUNK_STUCK_RUNNING)
        if active:
            recommendations.append(
                f"Chunk(s) {', '.join(stale_ids)} have been running longer than "
                f"{options.limits.stale_running_minutes:g} minutes; check the database for long-running queries."
            )
        else:
            recommendations.append(
                f"No coordinator owns chunk(s) {', '.join(stale_ids)}; reset them with: "
                f"{COMMAND_PREFIX} resume --plan-id {plan_id}"
            )

    if failed_ids:
        issues.append(ISSUE_CHUNK_FAILED_RETRY_EXHAUSTED)
        for chunk in run.chunks:
            if chunk.status == ChunkStatus.FAILED:
                recommendations.append(
                    f"Investigate chunk {chunk.id}'s last error: {chunk.last_error or 'unknown error'}"
                )
        recommendations.append(f"Retry failed chunks: {COMMAND_PREFIX} resume --plan-id {plan_id} --replay-failed")

    if run.status == BackfillStatus.FAILED:
        issues.append(ISSUE_RUN_FAILED)
        recommendations.append(f"Inspect status: {COMMAND_PREFIX} status --plan-id {plan_id}")
    elif run.status == BackfillStatus.CANCELLED:
        issues.append(ISSUE_RUN_CANCELLED)
        recommendations.append(
            f"Re-enter the cancelled run: {COMMAND_PREFIX} resume --plan-id {plan_id} --replay-failed"
        )
    elif run.status == BackfillStatus.PAUSED:
        issues.append(ISSUE_RUN_PAUSED)
        recommendations.append(f"Resume execution: {COMMAND_PREFIX} resume --plan-id {plan_id}")
    elif run.status == BackfillStatus.RUNNING and active:
        issues.append(ISSUE_REQUIRED_PENDING)
        recommendations.append(f"Monitor progress: {COMMAND_PREFIX} status --plan-id {plan_id}")

    if run.compatibility_token != compute_compatibility_token(plan, options):
        issues.append(ISSUE_PLAN_STALE)
        recommendations.append(
            "Backfill options changed since the run began; re-plan, or resume with --force-compatibility "
            "to continue under the new options."
        )

    if plan.environment is not None and plan.environment != active_environment:
        issues.append(ISSUE_ENVIRONMENT_MISMATCH)
        recommendations.append(_environment_recommendation(plan, active_environment))

    if not issues:
        recommendations.append(NO_REMEDIATION)

    return DoctorReport(
        plan_id=plan_id,
        target=plan.target,
        status=run.status,
        issue_codes=issues,
        recommendations=recommendations,
        failed_chunk_ids=failed_ids,
        stale_chunk_ids=stale_ids,
        summary=summary,
    )


def _environment_recommendation(plan: BackfillPlanState, active: EnvironmentFingerprint | None) -> str:
    assert plan.environment is not None  # noqa: S101
    actual = active.describe() if active is not None else "no configured database"
    return (
        f"Plan is bound to {plan.environment.describe()} but the active environment is {actual}; "
        "switch configuration or pass --force-environment."
    )
