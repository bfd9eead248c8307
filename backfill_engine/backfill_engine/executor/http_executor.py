"""ClickHouse statement executor over the HTTP interface.

Statements are sent as the ``POST`` body.  Error classification for the
coordinator's retry loop:

* transport errors, timeouts, 5xx, 408 and 429 are retryable;
* any other 4xx is a :class:`FatalExecutionError` (bad SQL, auth, ...).
"""

from __future__ import annotations

import json
import logging

import httpx

from backfill_engine.errors import FatalExecutionError
from backfill_engine.executor.base import ExecutionOutcome

logger = logging.getLogger(__name__)

_RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})
_MAX_ERROR_BODY = 500


class ClickHouseHttpError(Exception):
    """A retryable failure returned by the ClickHouse HTTP interface."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"ClickHouse HTTP {status_code}: {message}")
        self.status_code = status_code


def parse_written_rows(summary_header: str | None) -> int:
    """Extract ``written_rows`` from an ``X-ClickHouse-Summary`` header value."""
    if not summary_header:
        return 0
    try:
        summary = json.loads(summary_header)
        return int(summary.get("written_rows", 0))
    except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
        logger.debug("Unparseable X-ClickHouse-Summary header: %r", summary_header)
        return 0


class ClickHouseHttpExecutor:
    """Async executor that implements :class:`~backfill_engine.executor.base.SQLExecutor`.

    Parameters
    ----------
    url:
        Base URL of the ClickHouse HTTP endpoint (e.g. ``http://localhost:8123``).
    database:
        Default database for unqualified identifiers.
    user, password:
        Credentials sent as ``X-ClickHouse-User`` / ``X-ClickHouse-Key``.
    timeout:
        Per-statement timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.  A default client is
        created if not provided.
    """

    def __init__(
        self,
        url: str,
        *,
        database: str = "default",
        user: str | None = None,
        password: str | None = None,
        timeout: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url.rstrip("/") + "/"
        self._database = database
        headers: dict[str, str] = {"Content-Type": "text/plain; charset=utf-8"}
        if user:
            headers["X-ClickHouse-User"] = user
        if password:
            headers["X-ClickHouse-Key"] = password
        self._headers = headers
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    async def execute(self, statement: str) -> ExecutionOutcome:
        try:
            response = await self._client.post(
                self._url,
                params={"database": self._database},
                content=statement.encode("utf-8"),
                headers=self._headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("ClickHouse request failed: %s", exc)
            raise

        if response.status_code >= 400:
            message = response.text.strip()[:_MAX_ERROR_BODY]
            if response.status_code < 500 and response.status_code not in _RETRYABLE_CLIENT_STATUSES:
                raise FatalExecutionError(f"ClickHouse HTTP {response.status_code}: {message}")
            raise ClickHouseHttpError(response.status_code, message)

        return ExecutionOutcome(
            rows_written=parse_written_rows(response.headers.get("X-ClickHouse-Summary")),
            query_id=response.headers.get("X-ClickHouse-Query-Id"),
        )
