"""Environment and compatibility guards applied before a run starts or resumes."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from backfill_engine.errors import BackfillCompatibilityError, BackfillEnvironmentError
from backfill_engine.models.plan import BackfillPlanState, EnvironmentFingerprint, compute_deterministic_id, utcnow
from backfill_engine.models.run import BackfillRunState, OverrideRecord
from backfill_engine.options import BackfillPluginOptions

logger = logging.getLogger(__name__)

# Settings that only affect planning or diagnostics, never how an existing
# run's chunks execute.
_TOKEN_EXCLUDE: dict[str, set[str]] = {
    "defaults": {"default_window_hours"},
    "policy": {"required_targets"},
    "limits": {"stale_running_minutes"},
}


def stable_serialize(value: Any) -> str:
    """Serialise *value* to canonical JSON (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_compatibility_token(plan: BackfillPlanState, options: BackfillPluginOptions) -> str:
    """Hash the plan identity, its resolved options, and the execution-relevant runtime options."""
    payload = {
        "plan_id": plan.plan_id,
        "target": plan.target,
        "start": plan.start.isoformat(),
        "end": plan.end.isoformat(),
        "plan_options": plan.options.model_dump(mode="json"),
        "chunk_ids": [chunk.id for chunk in plan.chunks],
        "runtime_defaults": options.defaults.model_dump(mode="json", exclude=_TOKEN_EXCLUDE["defaults"]),
        "runtime_policy": options.policy.model_dump(mode="json", exclude=_TOKEN_EXCLUDE["policy"]),
        "runtime_limits": options.limits.model_dump(mode="json", exclude=_TOKEN_EXCLUDE["limits"]),
    }
    return compute_deterministic_id("compatibility", stable_serialize(payload))


def _override(flag: str, reason: str, now: datetime | None) -> OverrideRecord:
    logger.warning("Override %s applied: %s", flag, reason)
    return OverrideRecord(flag=flag, reason=reason, at=now or utcnow())


def ensure_environment_match(
    plan: BackfillPlanState,
    active: EnvironmentFingerprint | None,
    *,
    force_environment: bool = False,
    now: datetime | None = None,
) -> OverrideRecord | None:
    """Block execution of a bound plan against a different environment.

    Plans without a fingerprint are accepted against any environment.  A
    bound plan with no active database configured counts as a mismatch.

    Returns
    -------
    OverrideRecord | None
        The audit record when ``force_environment`` bypassed a mismatch.

    Raises
    ------
    BackfillEnvironmentError
        On a mismatch without ``force_environment``.
    """
    expected = plan.environment
    if expected is None or expected == active:
        return None

    actual = active.describe() if active is not None else "no configured database"
    reason = (
        f"Plan {plan.plan_id} is bound to {expected.describe()} but the active environment is {actual}."
    )
    if force_environment:
        return _override("--force-environment", reason, now)
    raise BackfillEnvironmentError(f"{reason} Retry with --force-environment to acknowledge the mismatch.")


def ensure_run_compatibility(
    run: BackfillRunState,
    plan: BackfillPlanState,
    options: BackfillPluginOptions,
    *,
    force_compatibility: bool = False,
    now: datetime | None = None,
) -> OverrideRecord | None:
    """Compare the run's compatibility token with a freshly computed one.

    On a forced mismatch the run adopts the new token so that later resumes
    compare against the options it actually continued with.

    Raises
    ------
    BackfillCompatibilityError
        On a mismatch without ``force_compatibility``.
    """
    expected = compute_compatibility_token(plan, options)
    plan_chunk_ids = [chunk.id for chunk in plan.chunks]
    run_chunk_ids = [chunk.id for chunk in run.chunks]

    problems: list[str] = []
    if run.compatibility_token != expected:
        problems.append("runtime options changed since the last checkpoint")
    if run_chunk_ids != plan_chunk_ids:
        problems.append("the run's chunks no longer match the plan")
    if not problems:
        return None

    reason = f"Run compatibility check failed for plan {plan.plan_id}: {'; '.join(problems)}."
    if not force_compatibility:
        raise BackfillCompatibilityError(f"{reason} Retry with --force-compatibility to acknowledge override.")

    run.compatibility_token = expected
    return _override("--force-compatibility", reason, now)
