"""Root logger configuration for the chkit CLI.

Human-readable log lines by default.  With ``CHKIT_STRUCTURED_LOGGING=true``
each record is emitted as a single-line JSON object so CI log collectors can
index the fields without regex parsing::

    {
        "timestamp": "2024-01-01T00:00:00.000000+00:00",
        "level": "WARNING",
        "logger": "backfill_engine.executor.coordinator",
        "message": "Chunk 0f3a... failed (attempt 2/3), retrying",
        "exc_info": "Traceback ..."  // present only on exceptions
    }

Logs always go to *stderr*; *stdout* is reserved for JSON payloads.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from datetime import UTC, datetime
from typing import Any

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        plan_id = getattr(record, "plan_id", None)
        if plan_id:
            payload["plan_id"] = plan_id

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)


def configure_logging(*, verbose: bool = False, structured: bool = False) -> None:
    """(Re)configure the root logger.

    Safe to call more than once; previously installed handlers are replaced.

    Parameters
    ----------
    verbose:
        Log at DEBUG instead of WARNING.
    structured:
        Use :class:`JSONFormatter` instead of the plain text format.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
