"""Built-in policy rules, one per finding code."""

from __future__ import annotations

from backfill_engine.checks.base import BasePolicyRule
from backfill_engine.checks.models import FindingCode, FindingSeverity, PolicyContext, PolicyFinding
from backfill_engine.guard import compute_compatibility_token
from backfill_engine.models.plan import BackfillPlanState, BackfillStatus, ChunkStatus
from backfill_engine.options import relaxed_policy_flags

_ACTIVE_RUN_STATUSES = frozenset({BackfillStatus.RUNNING, BackfillStatus.PAUSED})


def _pending_severity(context: PolicyContext) -> FindingSeverity:
    if context.options.policy.fail_check_on_required_pending_backfill:
        return FindingSeverity.ERROR
    return FindingSeverity.WARN


def _window_hours(plan: BackfillPlanState) -> float:
    return (plan.end - plan.start).total_seconds() / 3600


# ---------------------------------------------------------------------------
# backfill_plan_missing
# ---------------------------------------------------------------------------


class RequiredPlanMissingRule(BasePolicyRule):
    """A target listed in ``policy.required_targets`` has no plan at all."""

    @property
    def code(self) -> FindingCode:
        return FindingCode.PLAN_MISSING

    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        planned_targets = {plan.target for plan in context.plans}
        missing = sorted(t for t in context.options.policy.required_targets if t not in planned_targets)
        if not missing:
            return []
        return [
            PolicyFinding(
                code=self.code,
                message=f"Required backfill plan missing for target(s): {', '.join(missing)}",
                severity=_pending_severity(context),
                metadata={"targets": missing},
            )
        ]


# ---------------------------------------------------------------------------
# backfill_plan_stale
# ---------------------------------------------------------------------------


class PlanStaleRule(BasePolicyRule):
    """An unfinished plan was resolved under options that no longer apply."""

    @property
    def code(self) -> FindingCode:
        return FindingCode.PLAN_STALE

    @staticmethod
    def _is_stale(plan: BackfillPlanState, context: PolicyContext) -> bool:
        options = context.options
        run = context.run_for(plan)
        if run is not None:
            return run.compatibility_token != compute_compatibility_token(plan, options)
        defaults = options.defaults
        return (
            plan.options.max_parallel_chunks != defaults.max_parallel_chunks
            or plan.options.max_retries_per_chunk != defaults.max_retries_per_chunk
            or plan.options.require_idempotency_token != defaults.require_idempotency_token
            or plan.limits.model_dump(exclude={"stale_running_minutes"})
            != options.limits.model_dump(exclude={"stale_running_minutes"})
            or plan.policy.model_dump(exclude={"required_targets"})
            != options.policy.model_dump(exclude={"required_targets"})
        )

    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        stale = [plan.plan_id for plan in context.pending_plans() if self._is_stale(plan, context)]
        if not stale:
            return []
        return [
            PolicyFinding(
                code=self.code,
                message=f"Backfill plan(s) resolved under different options than the current configuration: "
                f"{', '.join(stale)}",
                severity=FindingSeverity.WARN,
                metadata={"plan_ids": stale},
            )
        ]


# ---------------------------------------------------------------------------
# backfill_policy_relaxed
# ---------------------------------------------------------------------------


class PolicyRelaxedRule(BasePolicyRule):
    """The configured policy is weaker than the strict default."""

    @property
    def code(self) -> FindingCode:
        return FindingCode.POLICY_RELAXED

    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        flags = relaxed_policy_flags(context.options.policy)
        if not flags:
            return []
        return [
            PolicyFinding(
                code=self.code,
                message=f"Backfill policy is relaxed: {', '.join(f'{flag}=false' for flag in flags)}.",
                severity=FindingSeverity.WARN,
                metadata={"flags": flags},
            )
        ]


# ---------------------------------------------------------------------------
# backfill_overlap_blocked
# ---------------------------------------------------------------------------


class OverlapBlockedRule(BasePolicyRule):
    """A pending plan overlaps an active run on the same target and would be refused."""

    @property
    def code(self) -> FindingCode:
        return FindingCode.OVERLAP_BLOCKED

    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        if not context.options.policy.block_overlapping_runs:
            return []

        pending = context.pending_plans()
        active = [
            plan
            for plan in pending
            if (run := context.run_for(plan)) is not None and run.status in _ACTIVE_RUN_STATUSES
        ]
        findings: list[PolicyFinding] = []
        for plan in pending:
            blockers = sorted(
                other.plan_id
                for other in active
                if other.plan_id != plan.plan_id
                and other.target == plan.target
                and other.start < plan.end
                and plan.start < other.end
            )
            if blockers:
                findings.append(
                    PolicyFinding(
                        code=self.code,
                        message=f"Plan {plan.plan_id} on {plan.target} overlaps active run(s) "
                        f"{', '.join(blockers)} and will be blocked without --force-overlap.",
                        severity=FindingSeverity.WARN,
                        metadata={"plan_id": plan.plan_id, "target": plan.target, "blocked_by": blockers},
                    )
                )
        return findings


# ---------------------------------------------------------------------------
# backfill_window_exceeds_limit
# ---------------------------------------------------------------------------


class WindowExceedsLimitRule(BasePolicyRule):
    """A pending plan's window is longer than ``limits.max_window_hours``.

    Plans created with ``--force-large-window`` only warn.
    """

    @property
    def code(self) -> FindingCode:
        return FindingCode.WINDOW_EXCEEDS_LIMIT

    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        limit = context.options.limits.max_window_hours
        findings: list[PolicyFinding] = []
        for plan in context.pending_plans():
            hours = _window_hours(plan)
            if hours <= limit:
                continue
            findings.append(
                PolicyFinding(
                    code=self.code,
                    message=f"Plan {plan.plan_id} spans {hours:.2f} hours, above limits.max_window_hours={limit:g}"
                    + (" (acknowledged with --force-large-window)." if plan.forced_large_window else "."),
                    severity=FindingSeverity.WARN if plan.forced_large_window else FindingSeverity.ERROR,
                    metadata={
                        "plan_id": plan.plan_id,
                        "window_hours": round(hours, 2),
                        "max_window_hours": limit,
                        "forced": plan.forced_large_window,
                    },
                )
            )
        return findings


# ---------------------------------------------------------------------------
# backfill_chunk_failed_retry_exhausted
# ---------------------------------------------------------------------------


class ChunkRetryExhaustedRule(BasePolicyRule):
    """A run holds chunks that failed after exhausting their retry budget."""

    @property
    def code(self) -> FindingCode:
        return FindingCode.CHUNK_FAILED_RETRY_EXHAUSTED

    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        failed: dict[str, list[str]] = {}
        for plan in context.plans:
            run = context.run_for(plan)
            if run is None:
                continue
            chunk_ids = [c.id for c in run.chunks if c.status == ChunkStatus.FAILED]
            if chunk_ids:
                failed[plan.plan_id] = chunk_ids
        if not failed:
            return []
        return [
            PolicyFinding(
                code=self.code,
                message=f"Backfill runs failed after retry budget: {len(failed)}",
                severity=FindingSeverity.ERROR,
                metadata={"failed_runs": len(failed), "failed_chunks": failed},
            )
        ]


# ---------------------------------------------------------------------------
# backfill_required_pending
# ---------------------------------------------------------------------------


class RequiredPendingRule(BasePolicyRule):
    """A planned backfill has not completed yet."""

    @property
    def code(self) -> FindingCode:
        return FindingCode.REQUIRED_PENDING

    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        pending = [plan.plan_id for plan in context.pending_plans()]
        if not pending:
            return []
        return [
            PolicyFinding(
                code=self.code,
                message=f"Required backfills pending completion: {len(pending)}",
                severity=_pending_severity(context),
                metadata={"required_count": len(pending), "plan_ids": pending},
            )
        ]


def default_rules() -> list[BasePolicyRule]:
    """Return the built-in rules in evaluation order."""
    return [
        RequiredPlanMissingRule(),
        PlanStaleRule(),
        PolicyRelaxedRule(),
        OverlapBlockedRule(),
        WindowExceedsLimitRule(),
        ChunkRetryExhaustedRule(),
        RequiredPendingRule(),
    ]
