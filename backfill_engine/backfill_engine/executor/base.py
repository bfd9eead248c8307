"""Interface for SQL execution backends used by the backfill coordinator.

The coordinator only needs ``execute(statement)``.  Transport, connection
handling, and authentication belong to the executor implementation.
"""

from __future__ import annotations

import inspect
from typing import Protocol

from pydantic import BaseModel, Field


class ExecutionOutcome(BaseModel):
    """Result of executing one chunk statement."""

    rows_written: int = Field(default=0, ge=0)
    query_id: str | None = None


class SQLExecutor(Protocol):
    """Structural interface for statement executors.

    Implementations are **not** required to subclass this protocol; they only
    need to expose a matching ``execute`` method.  ``execute`` may be a plain
    function or a coroutine function.
    """

    def execute(self, statement: str) -> ExecutionOutcome | None:
        """Execute a single rendered statement.

        Parameters
        ----------
        statement:
            Fully-rendered SQL for one chunk.

        Returns
        -------
        ExecutionOutcome | None
            Execution metadata.  ``None`` is treated as an outcome with no
            rows written.

        Raises
        ------
        FatalExecutionError
            When the failure must not be retried.  Any other exception is
            treated as retryable.
        """
        ...


async def run_statement(executor: SQLExecutor, statement: str) -> ExecutionOutcome:
    """Invoke *executor* and normalise its result, awaiting coroutine results."""
    result = executor.execute(statement)
    if inspect.isawaitable(result):
        result = await result
    if result is None:
        return ExecutionOutcome()
    if isinstance(result, ExecutionOutcome):
        return result
    return ExecutionOutcome.model_validate(result)
