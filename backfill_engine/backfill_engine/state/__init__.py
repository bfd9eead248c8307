"""File-backed persistence for backfill plans, runs, events, and locks."""

from backfill_engine.state.lock import RunLock
from backfill_engine.state.store import BackfillPaths, BackfillStateStore

__all__ = ["BackfillPaths", "BackfillStateStore", "RunLock"]
