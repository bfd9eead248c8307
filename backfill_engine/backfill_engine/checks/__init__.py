"""Backfill policy gate -- structured findings for the host's preflight check.

Quick start::

    from backfill_engine.checks import evaluate_backfill_check

    result = await evaluate_backfill_check(store, options)
    print(result.ok, [f.code for f in result.findings])
"""

from backfill_engine.checks.base import BasePolicyRule
from backfill_engine.checks.engine import PolicyGate, create_default_gate, evaluate_backfill_check, load_policy_context
from backfill_engine.checks.models import (
    FindingCode,
    FindingSeverity,
    PolicyCheckResult,
    PolicyContext,
    PolicyFinding,
)

__all__ = [
    "BasePolicyRule",
    "FindingCode",
    "FindingSeverity",
    "PolicyCheckResult",
    "PolicyContext",
    "PolicyFinding",
    "PolicyGate",
    "create_default_gate",
    "evaluate_backfill_check",
    "load_policy_context",
]
