"""Chunk execution: executor contract, HTTP executor, retry schedule, coordinator."""

from __future__ import annotations

from backfill_engine.executor.base import ExecutionOutcome, SQLExecutor, run_statement
from backfill_engine.executor.coordinator import BackfillCoordinator, SimulationDirective
from backfill_engine.executor.http_executor import ClickHouseHttpExecutor
from backfill_engine.executor.retry import RetryConfig, compute_delay

__all__ = [
    "BackfillCoordinator",
    "ClickHouseHttpExecutor",
    "ExecutionOutcome",
    "RetryConfig",
    "SQLExecutor",
    "SimulationDirective",
    "compute_delay",
    "run_statement",
]
