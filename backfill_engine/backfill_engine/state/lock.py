"""Exclusive per-plan run lock.

The lock is a marker file next to the run checkpoint.  Its payload (owner,
pid, acquisition time, TTL) is written to a private temp file first and then
hard-linked into place, so the lock never exists without its payload.  The
owner refreshes the lock while it runs; a lock whose last refresh is older
than its TTL is reaped transparently on the next acquisition attempt.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Any

from backfill_engine.errors import BackfillLockError
from backfill_engine.models.plan import format_timestamp, utcnow

logger = logging.getLogger(__name__)


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


class RunLock:
    """Advisory lock guarding a plan's run, event, and checkpoint files."""

    def __init__(
        self,
        lock_path: Path,
        *,
        owner: str | None = None,
        ttl_seconds: int = 3600,
    ) -> None:
        self._lock_path = lock_path
        self._owner = owner or default_owner()
        self._ttl_seconds = ttl_seconds
        self._held = False

    @property
    def path(self) -> Path:
        return self._lock_path

    @property
    def held(self) -> bool:
        return self._held

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def read(self) -> dict[str, Any] | None:
        """Return the current lock payload, or ``None`` when unlocked or unreadable."""
        try:
            payload = json.loads(self._lock_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Unreadable run lock %s: %s", self._lock_path, exc)
            return None
        return payload if isinstance(payload, dict) else None

    def _is_expired(self, payload: dict[str, Any] | None) -> bool:
        if payload is None:
            # Unreadable payload: age the file itself.
            try:
                modified = self._lock_path.stat().st_mtime
            except FileNotFoundError:
                return True
            return modified + self._ttl_seconds < time.time()
        try:
            seen_at = _parse_timestamp(str(payload.get("refreshed_at") or payload["acquired_at"]))
            ttl = int(payload.get("ttl_seconds", self._ttl_seconds))
        except (KeyError, TypeError, ValueError):
            return True
        return seen_at + timedelta(seconds=ttl) < utcnow()

    def is_locked(self) -> bool:
        """Return ``True`` if a non-expired lock exists."""
        if not self._lock_path.exists():
            return False
        return not self._is_expired(self.read())

    def _write_temp(self, payload: dict[str, Any]) -> Path:
        temp = self._lock_path.with_name(f".{self._lock_path.name}.{uuid.uuid4().hex}.tmp")
        temp.write_text(json.dumps(payload, sort_keys=True) + "\n", encoding="utf-8")
        return temp

    def _publish(self, payload: dict[str, Any]) -> bool:
        """Link a fully written payload into place; ``False`` if a lock exists."""
        temp = self._write_temp(payload)
        try:
            os.link(temp, self._lock_path)
        except FileExistsError:
            return False
        finally:
            temp.unlink(missing_ok=True)
        return True

    def acquire(self) -> None:
        """Acquire the lock or raise :class:`BackfillLockError`.

        Expired locks are deleted before the exclusive create is retried once.
        """
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "owner": self._owner,
            "pid": os.getpid(),
            "acquired_at": format_timestamp(utcnow()),
            "ttl_seconds": self._ttl_seconds,
        }

        for _ in range(2):
            if self._publish(payload):
                self._held = True
                return
            existing = self.read()
            if not self._is_expired(existing):
                owner = existing.get("owner", "unknown") if existing else "unknown"
                raise BackfillLockError(
                    f"Backfill plan is already being executed by {owner} (lock: {self._lock_path})."
                )
            logger.warning("Reaping expired run lock %s", self._lock_path)
            self._lock_path.unlink(missing_ok=True)

        raise BackfillLockError(f"Could not acquire run lock {self._lock_path}.")

    def refresh(self) -> None:
        """Extend the lock's lifetime by another TTL.

        Raises
        ------
        BackfillLockError
            If this instance does not hold the lock or it was taken over.
        """
        if not self._held:
            raise BackfillLockError(f"Run lock {self._lock_path} is not held by {self._owner}.")
        current = self.read()
        if current is None or current.get("owner") != self._owner:
            owner = current.get("owner", "unknown") if current else "nobody"
            raise BackfillLockError(f"Run lock {self._lock_path} was taken over by {owner}.")
        current["refreshed_at"] = format_timestamp(utcnow())
        temp = self._write_temp(current)
        os.replace(temp, self._lock_path)

    def release(self) -> None:
        if not self._held:
            return
        current = self.read()
        if current is not None and current.get("owner") != self._owner:
            logger.warning("Run lock %s was taken over by %s; leaving it in place", self._lock_path, current.get("owner"))
        else:
            self._lock_path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
