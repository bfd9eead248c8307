"""Tests for the backfill policy gate and its built-in rules."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from backfill_engine.checks import (
    BasePolicyRule,
    FindingCode,
    FindingSeverity,
    PolicyContext,
    PolicyGate,
    create_default_gate,
    evaluate_backfill_check,
)
from backfill_engine.models.plan import BackfillStatus, ChunkStatus, utcnow
from backfill_engine.options import normalize_backfill_options
from backfill_engine.planner.plan_builder import build_backfill_plan
from backfill_engine.runtime import ExecutionOptions, create_run_state


def _codes(result):
    return [f.code for f in result.findings]


def _write_run(store, plan, options, status, chunk_status=ChunkStatus.PENDING):
    run = create_run_state(plan, options, ExecutionOptions(), utcnow())
    run.status = status
    for chunk in run.chunks:
        chunk.status = chunk_status
    store.write_run(run)
    return run


def _plan(store, options, start_day, end_day, **kwargs):
    return build_backfill_plan(
        target=kwargs.pop("target", "analytics.events"),
        store=store,
        options=options,
        start=datetime(2024, 1, start_day, tzinfo=UTC),
        end=datetime(2024, 1, end_day, tzinfo=UTC),
        chunk_hours=24,
        **kwargs,
    ).plan


class ExplodingRule(BasePolicyRule):
    @property
    def code(self) -> FindingCode:
        return FindingCode.PLAN_STALE

    async def evaluate(self, context: PolicyContext):
        raise RuntimeError("boom")


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class TestPolicyGate:
    def test_default_gate_registers_every_code(self):
        assert create_default_gate().codes == list(FindingCode)

    def test_duplicate_code_rejected(self):
        gate = PolicyGate([ExplodingRule()])
        with pytest.raises(ValueError, match="already registered"):
            gate.register(ExplodingRule())

    @pytest.mark.asyncio
    async def test_rule_exception_becomes_error_finding(self, options):
        result = await PolicyGate([ExplodingRule()]).evaluate(PolicyContext(options=options))
        assert result.ok is False
        assert result.findings[0].severity == FindingSeverity.ERROR
        assert "boom" in result.findings[0].message
        assert result.findings[0].metadata == {"exception": "RuntimeError"}

    @pytest.mark.asyncio
    async def test_empty_store_passes(self, store, options):
        result = await evaluate_backfill_check(store, options)
        assert result.ok is True
        assert result.findings == []
        assert result.metadata == {"plan_count": 0, "required_count": 0, "active_runs": 0, "failed_runs": 0}


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestRules:
    @pytest.mark.asyncio
    async def test_pending_plan_fails_strict_check(self, store, options, two_day_plan):
        result = await evaluate_backfill_check(store, options)
        assert result.ok is False
        assert _codes(result) == [FindingCode.REQUIRED_PENDING]
        assert result.error_codes == ["backfill_required_pending"]
        assert result.metadata["required_count"] == 1

    @pytest.mark.asyncio
    async def test_relaxed_pending_only_warns(self, store, two_day_plan):
        relaxed = normalize_backfill_options({"policy": {"fail_check_on_required_pending_backfill": False}})
        result = await evaluate_backfill_check(store, relaxed)
        assert result.ok is True
        assert FindingCode.POLICY_RELAXED in _codes(result)
        pending = next(f for f in result.findings if f.code == FindingCode.REQUIRED_PENDING)
        assert pending.severity == FindingSeverity.WARN

    @pytest.mark.asyncio
    async def test_completed_plan_passes(self, store, options, two_day_plan):
        _write_run(store, two_day_plan, options, BackfillStatus.COMPLETED, ChunkStatus.DONE)
        result = await evaluate_backfill_check(store, options)
        assert result.ok is True
        assert result.findings == []

    @pytest.mark.asyncio
    async def test_required_target_without_plan(self, store):
        required = normalize_backfill_options({"policy": {"required_targets": ["analytics.sessions"]}})
        result = await evaluate_backfill_check(store, required)
        assert _codes(result) == [FindingCode.PLAN_MISSING]
        assert result.findings[0].metadata == {"targets": ["analytics.sessions"]}
        assert result.ok is False

    @pytest.mark.asyncio
    async def test_exhausted_chunks(self, store, options, two_day_plan):
        _write_run(store, two_day_plan, options, BackfillStatus.FAILED, ChunkStatus.FAILED)
        result = await evaluate_backfill_check(store, options)
        assert FindingCode.CHUNK_FAILED_RETRY_EXHAUSTED in _codes(result)
        assert result.metadata["failed_runs"] == 1
        exhausted = next(f for f in result.findings if f.code == FindingCode.CHUNK_FAILED_RETRY_EXHAUSTED)
        assert exhausted.metadata["failed_chunks"] == {two_day_plan.plan_id: [c.id for c in two_day_plan.chunks]}

    @pytest.mark.asyncio
    async def test_overlap_with_active_run(self, store, options, two_day_plan):
        _write_run(store, two_day_plan, options, BackfillStatus.PAUSED)
        other = _plan(store, options, 2, 4)
        result = await evaluate_backfill_check(store, options)
        overlap = [f for f in result.findings if f.code == FindingCode.OVERLAP_BLOCKED]
        assert len(overlap) == 1
        assert overlap[0].metadata["plan_id"] == other.plan_id
        assert overlap[0].metadata["blocked_by"] == [two_day_plan.plan_id]

    @pytest.mark.asyncio
    async def test_other_target_does_not_overlap(self, store, options, two_day_plan):
        _write_run(store, two_day_plan, options, BackfillStatus.RUNNING)
        _plan(store, options, 2, 4, target="analytics.sessions")
        result = await evaluate_backfill_check(store, options)
        assert FindingCode.OVERLAP_BLOCKED not in _codes(result)
        assert result.metadata["active_runs"] == 1

    @pytest.mark.asyncio
    async def test_window_over_limit(self, store, options, two_day_plan):
        tight = normalize_backfill_options({"limits": {"max_window_hours": 24}})
        result = await evaluate_backfill_check(store, tight)
        window = next(f for f in result.findings if f.code == FindingCode.WINDOW_EXCEEDS_LIMIT)
        assert window.severity == FindingSeverity.ERROR
        assert window.metadata["window_hours"] == 48

    @pytest.mark.asyncio
    async def test_forced_window_only_warns(self, store):
        tight = normalize_backfill_options({"limits": {"max_window_hours": 24}})
        _plan(store, tight, 1, 3, force_large_window=True)
        result = await evaluate_backfill_check(store, tight)
        window = next(f for f in result.findings if f.code == FindingCode.WINDOW_EXCEEDS_LIMIT)
        assert window.severity == FindingSeverity.WARN
        assert window.metadata["forced"] is True
        assert FindingCode.PLAN_STALE not in _codes(result)

    @pytest.mark.asyncio
    async def test_stale_plan_and_run(self, store, options, two_day_plan):
        changed = normalize_backfill_options({"defaults": {"max_parallel_chunks": 4}})
        result = await evaluate_backfill_check(store, changed)
        assert FindingCode.PLAN_STALE in _codes(result)

        _write_run(store, two_day_plan, options, BackfillStatus.PAUSED)
        result = await evaluate_backfill_check(store, changed)
        stale = next(f for f in result.findings if f.code == FindingCode.PLAN_STALE)
        assert stale.metadata == {"plan_ids": [two_day_plan.plan_id]}
