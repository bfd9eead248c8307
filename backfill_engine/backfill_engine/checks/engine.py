"""Policy gate -- evaluates plan/run state against the configured policy.

The :class:`PolicyGate` runs its rules in registration order and aggregates
their findings into a :class:`PolicyCheckResult`.  The gate only reports; it
never blocks execution itself.
"""

from __future__ import annotations

import logging

from backfill_engine.checks.base import BasePolicyRule
from backfill_engine.checks.models import (
    FindingCode,
    FindingSeverity,
    PolicyCheckResult,
    PolicyContext,
    PolicyFinding,
)
from backfill_engine.checks.rules import default_rules
from backfill_engine.models.plan import BackfillStatus, utcnow
from backfill_engine.options import BackfillPluginOptions
from backfill_engine.state.store import BackfillStateStore

logger = logging.getLogger(__name__)


class PolicyGate:
    """Ordered collection of policy rules.

    Parameters
    ----------
    rules:
        Optional initial rules.  Each finding code may be registered once.
    """

    def __init__(self, rules: list[BasePolicyRule] | None = None) -> None:
        self._rules: list[BasePolicyRule] = []
        for rule in rules or []:
            self.register(rule)

    @property
    def codes(self) -> list[FindingCode]:
        return [rule.code for rule in self._rules]

    def register(self, rule: BasePolicyRule) -> None:
        """Append *rule* to the evaluation order.

        Raises
        ------
        ValueError
            If a rule with the same code is already registered.
        """
        if rule.code in self.codes:
            raise ValueError(f"Policy rule {rule.code.value} is already registered.")
        self._rules.append(rule)
        logger.debug("Registered policy rule: %s", rule.code.value)

    def __len__(self) -> int:
        return len(self._rules)

    async def evaluate(self, context: PolicyContext) -> PolicyCheckResult:
        findings: list[PolicyFinding] = []
        for rule in self._rules:
            logger.debug("Evaluating policy rule: %s", rule.code.value)
            try:
                findings.extend(await rule.evaluate(context))
            except Exception as exc:
                logger.error("Policy rule %s raised an unhandled exception: %s", rule.code.value, exc)
                findings.append(
                    PolicyFinding(
                        code=rule.code,
                        message=f"Unhandled error in {rule.code.value}: {exc}",
                        severity=FindingSeverity.ERROR,
                        metadata={"exception": exc.__class__.__name__},
                    )
                )

        runs = list(context.runs.values())
        metadata = {
            "plan_count": len(context.plans),
            "required_count": len(context.pending_plans()),
            "active_runs": sum(1 for r in runs if r.status == BackfillStatus.RUNNING),
            "failed_runs": sum(1 for r in runs if r.status == BackfillStatus.FAILED),
        }
        return PolicyCheckResult.from_findings(findings, metadata)


def create_default_gate() -> PolicyGate:
    """Create a :class:`PolicyGate` with all built-in rules registered."""
    return PolicyGate(default_rules())


def load_policy_context(store: BackfillStateStore, options: BackfillPluginOptions) -> PolicyContext:
    """Read every plan and run from *store* into a :class:`PolicyContext`."""
    plans = []
    runs = {}
    for plan_id in store.list_plan_ids():
        plan = store.read_plan(plan_id)
        if plan is None:
            continue
        plans.append(plan)
        run = store.read_run(plan_id)
        if run is not None:
            runs[plan_id] = run
    return PolicyContext(options=options, plans=plans, runs=runs, evaluated_at=utcnow())


async def evaluate_backfill_check(
    store: BackfillStateStore,
    options: BackfillPluginOptions,
    gate: PolicyGate | None = None,
) -> PolicyCheckResult:
    """Evaluate the default (or given) gate against everything in *store*."""
    gate = gate or create_default_gate()
    return await gate.evaluate(load_policy_context(store, options))
