"""Shared fixtures for chkit CLI tests.

Every test runs in its own working directory with all ``CHKIT_*`` variables
cleared and the backfill state directory pointed at ``tmp_path``.  The
``clickhouse`` fixture swaps the HTTP executor for an in-memory fake.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from backfill_engine.executor.base import ExecutionOutcome
from chkit_cli.plugins.backfill import BackfillPlugin


class FakeClickHouse:
    """Executor double that records statements and reports fixed row counts."""

    def __init__(self, rows_per_statement: int = 5) -> None:
        self.statements: list[str] = []
        self.rows_per_statement = rows_per_statement
        self.closed = False

    async def execute(self, statement: str) -> ExecutionOutcome:
        self.statements.append(statement)
        return ExecutionOutcome(rows_written=self.rows_per_statement)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def state_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    for key in list(os.environ):
        if key.upper().startswith("CHKIT_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "state"
    monkeypatch.setenv("CHKIT_BACKFILL__STATE_DIR", str(path))
    return path


@pytest.fixture
def clickhouse(monkeypatch: pytest.MonkeyPatch) -> FakeClickHouse:
    fake = FakeClickHouse()
    monkeypatch.setenv("CHKIT_CLICKHOUSE_URL", "http://clickhouse:8123")
    monkeypatch.setenv("CHKIT_CLICKHOUSE_DATABASE", "analytics")
    monkeypatch.setattr(BackfillPlugin, "build_executor", lambda self: fake)
    return fake
