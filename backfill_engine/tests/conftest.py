"""Shared fixtures for backfill_engine tests.

Every test gets its own state directory under ``tmp_path``; executors are
in-memory fakes that record the statements they receive.
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from backfill_engine.errors import FatalExecutionError
from backfill_engine.executor.base import ExecutionOutcome
from backfill_engine.models.plan import BackfillPlanState
from backfill_engine.options import BackfillPluginOptions
from backfill_engine.planner.plan_builder import build_backfill_plan
from backfill_engine.state.store import BackfillStateStore

WINDOW_START = datetime(2024, 1, 1, tzinfo=UTC)
WINDOW_END = datetime(2024, 1, 3, tzinfo=UTC)
TARGET = "analytics.events"


class RecordingExecutor:
    """Async executor that records statements and optionally fails some of them.

    ``failures`` maps a substring of the statement to the number of times a
    matching statement should raise before succeeding.
    """

    def __init__(self, rows_per_statement: int = 10, failures: dict[str, int] | None = None, fatal: bool = False):
        self.statements: list[str] = []
        self.rows_per_statement = rows_per_statement
        self.failures = dict(failures or {})
        self.fatal = fatal

    async def execute(self, statement: str) -> ExecutionOutcome:
        self.statements.append(statement)
        for needle, remaining in self.failures.items():
            if needle in statement and remaining > 0:
                self.failures[needle] = remaining - 1
                if self.fatal:
                    raise FatalExecutionError("Code: 62. Syntax error")
                raise ConnectionError("connection reset by peer")
        return ExecutionOutcome(rows_written=self.rows_per_statement)


@pytest.fixture
def store(tmp_path) -> BackfillStateStore:
    return BackfillStateStore(tmp_path / "backfill")


@pytest.fixture
def options() -> BackfillPluginOptions:
    return BackfillPluginOptions()


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def two_day_plan(store: BackfillStateStore, options: BackfillPluginOptions) -> BackfillPlanState:
    """The two-chunk plan over 2024-01-01 .. 2024-01-03 with 24h chunks."""
    return build_backfill_plan(
        target=TARGET,
        store=store,
        options=options,
        start=WINDOW_START,
        end=WINDOW_END,
        chunk_hours=24,
    ).plan


@pytest.fixture
def make_executor() -> type[RecordingExecutor]:
    return RecordingExecutor
