"""File-backed document store for backfill plans, runs, and event logs.

Layout under the state directory::

    plans/<plan_id>.json      immutable plan
    runs/<plan_id>.json       run checkpoint (source of truth for progress)
    runs/<plan_id>.lock       exclusive coordinator lock
    runs/<plan_id>.cancel     cross-process cancel request
    events/<plan_id>.ndjson   append-only audit log

Documents are written atomically (temp file + ``os.replace``) with sorted
keys so that a reader never observes a half-written checkpoint.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from backfill_engine.errors import BackfillConfigError, BackfillPersistenceError
from backfill_engine.models.plan import PLAN_SCHEMA_VERSION, BackfillPlanState, format_timestamp, utcnow
from backfill_engine.models.run import RUN_SCHEMA_VERSION, BackfillRunState

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass(frozen=True)
class BackfillPaths:
    """Every on-disk location owned by one plan."""

    state_dir: Path
    plan_path: Path
    run_path: Path
    event_path: Path
    lock_path: Path
    cancel_path: Path


def dump_document(model: BaseModel) -> str:
    """Serialise *model* to pretty, key-sorted JSON."""
    return json.dumps(model.model_dump(mode="json"), sort_keys=True, indent=2) + "\n"


def atomic_write_text(path: Path, text: str) -> None:
    """Write *text* to *path* so readers see either the old or the new content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp.{os.getpid()}")
    try:
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                logger.debug("Could not remove temp file %s", tmp_path)


class BackfillStateStore:
    """Read and write plan, run, and event documents under *state_dir*."""

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    @property
    def plans_dir(self) -> Path:
        return self._state_dir / "plans"

    @property
    def runs_dir(self) -> Path:
        return self._state_dir / "runs"

    @property
    def events_dir(self) -> Path:
        return self._state_dir / "events"

    def paths(self, plan_id: str) -> BackfillPaths:
        return BackfillPaths(
            state_dir=self._state_dir,
            plan_path=self.plans_dir / f"{plan_id}.json",
            run_path=self.runs_dir / f"{plan_id}.json",
            event_path=self.events_dir / f"{plan_id}.ndjson",
            lock_path=self.runs_dir / f"{plan_id}.lock",
            cancel_path=self.runs_dir / f"{plan_id}.cancel",
        )

    # -- Documents ------------------------------------------------------------

    def _read_document(self, path: Path, model: type[ModelT], max_version: int) -> ModelT | None:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise BackfillConfigError(f"Unreadable backfill state file {path}: {exc}") from exc

        if not isinstance(raw, dict):
            raise BackfillConfigError(f"Backfill state file {path} must contain a JSON object.")
        version = raw.get("schema_version", 1)
        if not isinstance(version, int) or version > max_version:
            raise BackfillConfigError(
                f"Backfill state file {path} has schema_version={version!r}; "
                f"this version supports up to {max_version}."
            )
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            raise BackfillConfigError(f"Invalid backfill state file {path}: {exc}") from exc

    def read_plan(self, plan_id: str) -> BackfillPlanState | None:
        return self._read_document(self.paths(plan_id).plan_path, BackfillPlanState, PLAN_SCHEMA_VERSION)

    def load_plan(self, plan_id: str) -> BackfillPlanState:
        """Return the plan or raise :class:`BackfillConfigError` when missing."""
        plan = self.read_plan(plan_id)
        if plan is None:
            raise BackfillConfigError(f"Backfill plan not found: {self.paths(plan_id).plan_path}")
        return plan

    def write_plan(self, plan: BackfillPlanState) -> Path:
        path = self.paths(plan.plan_id).plan_path
        try:
            atomic_write_text(path, dump_document(plan))
        except OSError as exc:
            raise BackfillPersistenceError(f"Failed to write backfill plan {path}: {exc}") from exc
        return path

    def read_run(self, plan_id: str) -> BackfillRunState | None:
        return self._read_document(self.paths(plan_id).run_path, BackfillRunState, RUN_SCHEMA_VERSION)

    def write_run_text(self, plan_id: str, text: str) -> Path:
        """Persist an already-serialised run checkpoint.

        Raises
        ------
        BackfillPersistenceError
            If the checkpoint cannot be written.  Callers must stop executing.
        """
        path = self.paths(plan_id).run_path
        try:
            atomic_write_text(path, text)
        except OSError as exc:
            raise BackfillPersistenceError(f"Failed to write backfill run checkpoint {path}: {exc}") from exc
        return path

    def write_run(self, run: BackfillRunState) -> Path:
        return self.write_run_text(run.plan_id, dump_document(run))

    def list_plan_ids(self) -> list[str]:
        if not self.plans_dir.is_dir():
            return []
        return sorted(p.stem for p in self.plans_dir.glob("*.json") if p.is_file())

    def list_runs(self) -> list[BackfillRunState]:
        """Return every readable run; unreadable checkpoints are logged and skipped."""
        if not self.runs_dir.is_dir():
            return []
        runs: list[BackfillRunState] = []
        for path in sorted(self.runs_dir.glob("*.json")):
            try:
                run = self.read_run(path.stem)
            except BackfillConfigError as exc:
                logger.warning("Skipping unreadable run checkpoint %s: %s", path, exc)
                continue
            if run is not None:
                runs.append(run)
        return runs

    # -- Event log --------------------------------------------------------------

    def append_event(self, plan_id: str, event_type: str, **fields: Any) -> None:
        """Append one audit record.  Failures are logged and never raised."""
        record = {"at": format_timestamp(utcnow()), "type": event_type, "plan_id": plan_id, **fields}
        path = self.paths(plan_id).event_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True, default=str) + "\n")
        except OSError as exc:
            logger.warning("Failed to append backfill event %s to %s: %s", event_type, path, exc)

    def read_events(self, plan_id: str) -> list[dict[str, Any]]:
        path = self.paths(plan_id).event_path
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed event at %s:%d", path, line_number)
        return events

    # -- Cancel requests --------------------------------------------------------

    def request_cancel(self, plan_id: str) -> Path:
        path = self.paths(plan_id).cancel_path
        try:
            atomic_write_text(path, json.dumps({"requested_at": format_timestamp(utcnow())}) + "\n")
        except OSError as exc:
            raise BackfillPersistenceError(f"Failed to write cancel request {path}: {exc}") from exc
        return path

    def cancel_requested(self, plan_id: str) -> bool:
        return self.paths(plan_id).cancel_path.exists()

    def clear_cancel(self, plan_id: str) -> None:
        self.paths(plan_id).cancel_path.unlink(missing_ok=True)
