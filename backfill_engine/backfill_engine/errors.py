"""Exception hierarchy for the backfill engine.

Every error the engine raises on purpose derives from :class:`BackfillError`
so that hosts can map the whole family to a single exit code.  Policy-gate
findings are *not* errors; they are returned as structured data.
"""

from __future__ import annotations


class BackfillError(Exception):
    """Base class for all backfill engine errors."""


class BackfillConfigError(BackfillError):
    """Invalid options, arguments, windows, or missing plan/run state."""


class BackfillIdempotencyError(BackfillConfigError):
    """A statement template does not reference the chunk idempotency token."""


class BackfillEnvironmentError(BackfillError):
    """The active database environment differs from the plan's binding."""


class BackfillCompatibilityError(BackfillError):
    """The plan or resolved options changed since the run began."""


class BackfillOverlapError(BackfillError):
    """Another active run touches an overlapping window on the same target."""


class BackfillLockError(BackfillError):
    """The plan is already owned by a live coordinator."""


class BackfillPersistenceError(BackfillError):
    """The run checkpoint could not be written.

    Fatal to the run: execution stops once the source of truth can no longer
    be updated.
    """


class FatalExecutionError(Exception):
    """Raised by SQL executors to mark a statement failure as non-retryable."""
