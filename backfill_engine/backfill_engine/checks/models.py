"""Data models for the backfill policy gate.

Findings are structured data, never exceptions.  The host decides whether
``error``-severity findings fail its preflight check.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from backfill_engine.models.plan import BackfillPlanState, BackfillStatus
from backfill_engine.models.run import BackfillRunState
from backfill_engine.options import BackfillPluginOptions


class FindingSeverity(str, Enum):
    """How critical a finding is."""

    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class FindingCode(str, Enum):
    """Stable finding codes, in evaluation order."""

    PLAN_MISSING = "backfill_plan_missing"
    PLAN_STALE = "backfill_plan_stale"
    POLICY_RELAXED = "backfill_policy_relaxed"
    OVERLAP_BLOCKED = "backfill_overlap_blocked"
    WINDOW_EXCEEDS_LIMIT = "backfill_window_exceeds_limit"
    CHUNK_FAILED_RETRY_EXHAUSTED = "backfill_chunk_failed_retry_exhausted"
    REQUIRED_PENDING = "backfill_required_pending"


class PolicyFinding(BaseModel):
    """A single policy-gate finding."""

    code: FindingCode = Field(..., description="Stable machine-readable code.")
    message: str = Field(..., description="Human-readable description.")
    severity: FindingSeverity
    metadata: dict[str, Any] = Field(default_factory=dict)


class PolicyCheckResult(BaseModel):
    """Aggregated findings for the host's preflight check."""

    plugin: str = "backfill"
    evaluated: bool = True
    ok: bool = True
    findings: list[PolicyFinding] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def error_codes(self) -> list[str]:
        return [f.code.value for f in self.findings if f.severity == FindingSeverity.ERROR]

    @staticmethod
    def from_findings(findings: list[PolicyFinding], metadata: dict[str, Any] | None = None) -> PolicyCheckResult:
        """Build a result; ``ok`` is False when any finding has ``error`` severity."""
        return PolicyCheckResult(
            ok=all(f.severity != FindingSeverity.ERROR for f in findings),
            findings=findings,
            metadata=metadata or {},
        )


class PolicyContext(BaseModel):
    """Everything a rule may inspect.  Rules never touch the filesystem."""

    options: BackfillPluginOptions
    plans: list[BackfillPlanState] = Field(default_factory=list)
    runs: dict[str, BackfillRunState] = Field(
        default_factory=dict,
        description="Run state keyed by plan id; plans never executed are absent.",
    )
    evaluated_at: datetime | None = None

    def run_for(self, plan: BackfillPlanState) -> BackfillRunState | None:
        return self.runs.get(plan.plan_id)

    def pending_plans(self) -> list[BackfillPlanState]:
        """Plans whose run has not completed (including plans never run)."""
        pending = []
        for plan in self.plans:
            run = self.run_for(plan)
            if run is None or run.status != BackfillStatus.COMPLETED:
                pending.append(plan)
        return pending
