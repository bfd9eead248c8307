"""Abstract base class for policy rules.

All policy rules must subclass :class:`BasePolicyRule` and implement
:meth:`evaluate`.
"""

from __future__ import annotations

import abc

from backfill_engine.checks.models import FindingCode, PolicyContext, PolicyFinding


class BasePolicyRule(abc.ABC):
    """Abstract base for policy rules.

    Rules are stateless; all required data is passed via the
    :class:`PolicyContext`.  A rule returns zero or more findings, all
    carrying its own :attr:`code`.
    """

    @property
    @abc.abstractmethod
    def code(self) -> FindingCode:
        """The finding code this rule emits."""

    @abc.abstractmethod
    async def evaluate(self, context: PolicyContext) -> list[PolicyFinding]:
        """Evaluate the rule against *context*."""
