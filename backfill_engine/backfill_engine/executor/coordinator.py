"""Execution coordinator for backfill runs.

A single coordinating task dispatches chunks in plan order, bounded by
``max_parallel_chunks``.  Every chunk transition is checkpointed through one
serialised writer, so the run file on disk is always a consistent snapshot of
the latest known state of every chunk.  A dispatch slot is only released after
a chunk's terminal checkpoint has been written, which makes persistence the
ordering barrier between a chunk finishing and the next dispatch decision.

Stopping
--------
* cancel (in-process event or the ``runs/<plan_id>.cancel`` marker) and
  pause (SIGINT/SIGTERM) stop new dispatches; in-flight chunks finish their
  current attempt before the coordinator exits;
* a checkpoint write failure is fatal and re-raised once in-flight chunks
  have settled;
* losing the run lock (the optional *heartbeat* raises
  :class:`BackfillLockError`) stops new dispatches like a pause.

However the coordinator exits, no chunk is left ``running`` in the persisted
run.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from backfill_engine.errors import BackfillLockError, BackfillPersistenceError, FatalExecutionError
from backfill_engine.executor.base import SQLExecutor, run_statement
from backfill_engine.executor.retry import RetryConfig, compute_delay, should_retry
from backfill_engine.models.plan import BackfillPlanState, BackfillStatus, ChunkStatus, utcnow
from backfill_engine.models.run import BackfillRunChunkState, BackfillRunState
from backfill_engine.state.store import BackfillStateStore, dump_document

logger = logging.getLogger(__name__)

_STOP_CANCELLED = "cancelled"
_STOP_PAUSED = "paused"
_STOP_PERSISTENCE = "persistence_error"


class SimulationDirective(BaseModel):
    """Fault injection: fail *fail_chunk_id* while its attempt count is <= *fail_count*."""

    fail_chunk_id: str | None = None
    fail_count: int = Field(default=0, ge=0)

    def should_fail(self, chunk: BackfillRunChunkState) -> bool:
        return self.fail_chunk_id == chunk.id and chunk.attempts <= self.fail_count


class SimulatedChunkFailure(Exception):
    """Raised in place of executing a chunk selected by a simulation directive."""


def prepare_chunks_for_dispatch(
    run: BackfillRunState,
    *,
    replay_done: bool,
    replay_failed: bool,
    skip_failed: bool = False,
) -> list[str]:
    """Apply replay decisions and crash recovery to *run* in place.

    * ``running`` chunks (left behind by a crashed coordinator) go back to
      ``pending`` and their interrupted attempt is not counted;
    * ``done`` chunks are reset only with *replay_done*;
    * ``failed`` chunks are reset with *replay_failed* or marked ``skipped``
      with *skip_failed*.

    Returns the ids of chunks marked ``skipped``.
    """
    skipped: list[str] = []
    for chunk in run.chunks:
        if chunk.status == ChunkStatus.RUNNING:
            chunk.status = ChunkStatus.PENDING
            chunk.attempts = max(chunk.attempts - 1, 0)
        elif chunk.status == ChunkStatus.DONE and replay_done:
            _reset_chunk(chunk)
        elif chunk.status == ChunkStatus.FAILED and replay_failed:
            _reset_chunk(chunk)
        elif chunk.status == ChunkStatus.FAILED and skip_failed:
            chunk.status = ChunkStatus.SKIPPED
            skipped.append(chunk.id)
    return skipped


def _reset_chunk(chunk: BackfillRunChunkState) -> None:
    chunk.status = ChunkStatus.PENDING
    chunk.attempts = 0
    chunk.last_error = None
    chunk.started_at = None
    chunk.completed_at = None
    chunk.rows_written = 0


class BackfillCoordinator:
    """Drive one run of a plan to a terminal or paused state.

    Parameters
    ----------
    plan:
        The plan being executed.
    run:
        The run state, already merged with the plan and prepared for
        dispatch.  Mutated in place.
    store:
        State store used for checkpoints and events.
    executor:
        Statement executor.  ``None`` treats every statement as a no-op.
    retry:
        Attempt budget and backoff schedule.
    max_parallel_chunks:
        Upper bound on concurrently executing chunks.
    simulation:
        Optional fault-injection directive.
    cancel_event, pause_event:
        In-process stop signals.  The cancel marker file is honoured as well.
    heartbeat:
        Called from a worker thread every *heartbeat_interval* seconds while
        the run executes, typically :meth:`RunLock.refresh`.
    """

    def __init__(
        self,
        *,
        plan: BackfillPlanState,
        run: BackfillRunState,
        store: BackfillStateStore,
        executor: SQLExecutor | None,
        retry: RetryConfig,
        max_parallel_chunks: int = 1,
        simulation: SimulationDirective | None = None,
        cancel_event: asyncio.Event | None = None,
        pause_event: asyncio.Event | None = None,
        heartbeat: Callable[[], Any] | None = None,
        heartbeat_interval: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._plan = plan
        self._run = run
        self._store = store
        self._executor = executor
        self._retry = retry
        self._max_parallel = max(1, max_parallel_chunks)
        self._simulation = simulation or SimulationDirective()
        self._cancel_event = cancel_event or asyncio.Event()
        self._pause_event = pause_event or asyncio.Event()
        self._heartbeat = heartbeat
        self._heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._sleep = sleep
        self._write_lock = asyncio.Lock()
        self._stop_reason: str | None = None
        self._persistence_error: BackfillPersistenceError | None = None

    @property
    def run(self) -> BackfillRunState:
        return self._run

    def request_cancel(self) -> None:
        self._cancel_event.set()

    def request_pause(self) -> None:
        self._pause_event.set()

    # -- Checkpointing ----------------------------------------------------------

    def _write_checkpoint(self, text: str, event_type: str, fields: dict[str, Any]) -> None:
        self._store.write_run_text(self._run.plan_id, text)
        self._store.append_event(self._run.plan_id, event_type, **fields)

    async def _checkpoint(self, event_type: str, **fields: Any) -> None:
        """Persist the full run state, then append one event.

        Writes are serialised; the snapshot is taken under the same lock so
        the file always reflects the latest in-memory state.
        """
        async with self._write_lock:
            self._run.updated_at = self._clock()
            text = dump_document(self._run)
            try:
                await asyncio.to_thread(self._write_checkpoint, text, event_type, fields)
            except BackfillPersistenceError as exc:
                logger.error("Checkpoint failed for plan %s: %s", self._run.plan_id, exc)
                if self._persistence_error is None:
                    self._persistence_error = exc
                self._stop_reason = _STOP_PERSISTENCE
                raise

    # -- Stop handling ----------------------------------------------------------

    def _should_stop(self) -> bool:
        if self._stop_reason is not None:
            return True
        if self._cancel_event.is_set() or self._store.cancel_requested(self._run.plan_id):
            logger.info("Cancel requested for plan %s; no further chunks will be dispatched", self._run.plan_id)
            self._stop_reason = _STOP_CANCELLED
        elif self._pause_event.is_set():
            logger.info("Pause requested for plan %s; no further chunks will be dispatched", self._run.plan_id)
            self._stop_reason = _STOP_PAUSED
        return self._stop_reason is not None

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._pause_event.set)
            except (NotImplementedError, RuntimeError, ValueError):
                logger.debug("Signal handler for %s not supported here", sig.name)
                continue
            installed.append(sig)
        return installed

    @staticmethod
    def _remove_signal_handlers(installed: list[signal.Signals]) -> None:
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)

    async def _keep_alive(self, heartbeat: Callable[[], Any], stopped: asyncio.Event) -> None:
        while True:
            try:
                await asyncio.wait_for(stopped.wait(), timeout=self._heartbeat_interval)
                return
            except TimeoutError:
                pass
            try:
                await asyncio.to_thread(heartbeat)
            except BackfillLockError as exc:
                logger.error("Lost run lock for plan %s: %s", self._run.plan_id, exc)
                self._pause_event.set()
                return
            except OSError as exc:
                logger.warning("Run lock heartbeat failed for plan %s: %s", self._run.plan_id, exc)

    # -- Chunk execution ----------------------------------------------------------

    async def _execute_chunk(self, chunk: BackfillRunChunkState) -> None:
        if not should_retry(chunk.attempts, self._retry):
            chunk.status = ChunkStatus.FAILED
            chunk.last_error = chunk.last_error or f"Retry budget exhausted for chunk {chunk.id}"
            chunk.completed_at = self._clock()
            await self._checkpoint(
                "chunk_failed_retry_exhausted",
                chunk_id=chunk.id,
                attempt=chunk.attempts,
                message=chunk.last_error,
            )
            return

        while should_retry(chunk.attempts, self._retry):
            if chunk.attempts > 0 and self._should_stop():
                return

            chunk.status = ChunkStatus.RUNNING
            chunk.attempts += 1
            chunk.started_at = self._clock()
            chunk.completed_at = None
            await self._checkpoint("chunk_started", chunk_id=chunk.id, attempt=chunk.attempts)

            try:
                if self._simulation.should_fail(chunk):
                    raise SimulatedChunkFailure(f"Simulated failure for chunk {chunk.id} attempt {chunk.attempts}")
                if self._executor is None:
                    rows_written = 0
                else:
                    rows_written = (await run_statement(self._executor, chunk.sql_template)).rows_written
            except FatalExecutionError as exc:
                chunk.status = ChunkStatus.FAILED
                chunk.last_error = str(exc) or exc.__class__.__name__
                chunk.completed_at = self._clock()
                logger.error("Chunk %s failed with a non-retryable error: %s", chunk.id, chunk.last_error)
                await self._checkpoint(
                    "chunk_failed_fatal",
                    chunk_id=chunk.id,
                    attempt=chunk.attempts,
                    message=chunk.last_error,
                )
                return
            except Exception as exc:  # noqa: BLE001
                chunk.last_error = str(exc) or exc.__class__.__name__
                if not should_retry(chunk.attempts, self._retry):
                    chunk.status = ChunkStatus.FAILED
                    chunk.completed_at = self._clock()
                    logger.error(
                        "Chunk %s failed after %d attempt(s): %s", chunk.id, chunk.attempts, chunk.last_error
                    )
                    await self._checkpoint(
                        "chunk_failed_retry_exhausted",
                        chunk_id=chunk.id,
                        attempt=chunk.attempts,
                        message=chunk.last_error,
                    )
                    return

                chunk.status = ChunkStatus.PENDING
                delay = compute_delay(chunk.attempts, self._retry)
                logger.warning(
                    "Chunk %s attempt %d/%d failed, retrying in %.1fs: %s",
                    chunk.id,
                    chunk.attempts,
                    self._retry.max_attempts,
                    delay,
                    chunk.last_error,
                )
                await self._checkpoint(
                    "chunk_retry_scheduled",
                    chunk_id=chunk.id,
                    attempt=chunk.attempts,
                    next_attempt=chunk.attempts + 1,
                    delay_seconds=delay,
                    message=chunk.last_error,
                )
                if delay > 0:
                    await self._sleep(delay)
                continue

            chunk.status = ChunkStatus.DONE
            chunk.completed_at = self._clock()
            chunk.last_error = None
            chunk.rows_written = rows_written
            await self._checkpoint(
                "chunk_done",
                chunk_id=chunk.id,
                attempt=chunk.attempts,
                rows_written=rows_written,
            )
            return

    async def _run_slot(self, chunk: BackfillRunChunkState, slots: asyncio.Semaphore) -> None:
        try:
            await self._execute_chunk(chunk)
        except BackfillPersistenceError:
            # Recorded by _checkpoint; surfaced once in-flight chunks settle.
            pass
        finally:
            slots.release()

    # -- Run loop -------------------------------------------------------------------

    async def _finish(self) -> None:
        """Record the final run status and consume any pending cancel marker."""
        run = self._run
        if self._stop_reason != _STOP_CANCELLED and self._store.cancel_requested(run.plan_id):
            logger.info("Cancel for plan %s arrived after the last dispatch; it has no effect", run.plan_id)
        try:
            await self._record_outcome()
        finally:
            self._store.clear_cancel(run.plan_id)

    async def _record_outcome(self) -> None:
        run = self._run
        now = self._clock()

        if self._stop_reason == _STOP_CANCELLED:
            run.status = BackfillStatus.CANCELLED
            run.completed_at = now
            run.last_error = "Cancelled by operator"
            await self._checkpoint("run_cancelled")
            return

        if self._stop_reason == _STOP_PAUSED:
            run.status = BackfillStatus.PAUSED
            await self._checkpoint("run_paused", reason="signal")
            return

        failed = [c for c in run.chunks if c.status == ChunkStatus.FAILED]
        unfinished = [c for c in run.chunks if c.status in (ChunkStatus.PENDING, ChunkStatus.RUNNING)]
        if failed:
            run.status = BackfillStatus.FAILED
            run.last_error = failed[-1].last_error or "One or more chunks failed"
            run.completed_at = now
            await self._checkpoint(
                "run_completed_with_failures",
                failed_count=len(failed),
                total_count=len(run.chunks),
            )
        elif unfinished:
            run.status = BackfillStatus.PAUSED
            await self._checkpoint("run_paused", reason="incomplete", pending_count=len(unfinished))
        else:
            run.status = BackfillStatus.COMPLETED
            run.completed_at = now
            run.last_error = None
            await self._checkpoint("run_completed")

    def _settle_interrupted(self) -> None:
        """Leave no chunk ``running`` after an abnormal exit and pause the run."""
        for chunk in self._run.chunks:
            if chunk.status == ChunkStatus.RUNNING:
                chunk.status = ChunkStatus.PENDING
                chunk.attempts = max(chunk.attempts - 1, 0)

        if self._run.status != BackfillStatus.RUNNING:
            return

        self._run.status = BackfillStatus.PAUSED
        self._run.updated_at = self._clock()
        try:
            self._store.write_run(self._run)
        except BackfillPersistenceError:
            if self._persistence_error is None:
                raise
            logger.error("Could not persist paused state for plan %s", self._run.plan_id)
            return
        self._store.append_event(self._run.plan_id, "run_paused", reason="interrupted")

    async def execute(self, *, handle_signals: bool = False) -> BackfillRunState:
        """Execute every pending chunk and return the final run state.

        Raises
        ------
        BackfillPersistenceError
            If a checkpoint could not be written.
        """
        run = self._run
        installed = self._install_signal_handlers() if handle_signals else []
        stopped = asyncio.Event()
        keep_alive = None
        if self._heartbeat is not None:
            keep_alive = asyncio.create_task(self._keep_alive(self._heartbeat, stopped))
        try:
            run.status = BackfillStatus.RUNNING
            run.completed_at = None
            run.last_error = None
            await self._checkpoint(
                "run_started",
                replay_done=run.replay_done,
                replay_failed=run.replay_failed,
                max_parallel_chunks=self._max_parallel,
            )

            slots = asyncio.Semaphore(self._max_parallel)
            in_flight: list[asyncio.Task[None]] = []
            for chunk in run.chunks:
                if chunk.status != ChunkStatus.PENDING:
                    continue
                await slots.acquire()
                if self._should_stop():
                    slots.release()
                    break
                logger.debug("Dispatching chunk %s [%s, %s)", chunk.id, chunk.start, chunk.end)
                in_flight.append(asyncio.create_task(self._run_slot(chunk, slots)))

            if in_flight:
                await asyncio.gather(*in_flight)

            if self._persistence_error is not None:
                raise self._persistence_error

            if any(c.status == ChunkStatus.PENDING for c in run.chunks):
                self._should_stop()
            await self._finish()
            return run
        finally:
            if keep_alive is not None:
                stopped.set()
                await keep_alive
            if installed:
                self._remove_signal_handlers(installed)
            self._settle_interrupted()
