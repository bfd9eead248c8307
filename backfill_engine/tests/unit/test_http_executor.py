"""Unit tests for backfill_engine.executor.http_executor.

Uses ``httpx.MockTransport`` so no ClickHouse server is required.
"""

from __future__ import annotations

import json

import httpx
import pytest

from backfill_engine.errors import FatalExecutionError
from backfill_engine.executor.base import ExecutionOutcome, run_statement
from backfill_engine.executor.http_executor import ClickHouseHttpError, ClickHouseHttpExecutor, parse_written_rows


def _executor(handler, **kwargs) -> ClickHouseHttpExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ClickHouseHttpExecutor("http://clickhouse:8123", http_client=client, **kwargs)


class TestExecute:
    @pytest.mark.asyncio
    async def test_posts_statement_with_credentials(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                headers={
                    "X-ClickHouse-Summary": json.dumps({"written_rows": "42"}),
                    "X-ClickHouse-Query-Id": "q-1",
                },
            )

        executor = _executor(handler, database="analytics", user="loader", password="s3cret")
        outcome = await executor.execute("INSERT INTO analytics.events SELECT 1")

        assert outcome == ExecutionOutcome(rows_written=42, query_id="q-1")
        request = seen[0]
        assert request.method == "POST"
        assert request.url.params["database"] == "analytics"
        assert request.headers["X-ClickHouse-User"] == "loader"
        assert request.headers["X-ClickHouse-Key"] == "s3cret"
        assert request.content == b"INSERT INTO analytics.events SELECT 1"

    @pytest.mark.asyncio
    async def test_bad_sql_is_fatal(self):
        executor = _executor(lambda request: httpx.Response(400, text="Code: 62. Syntax error"))
        with pytest.raises(FatalExecutionError, match="Syntax error"):
            await executor.execute("SELEC 1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [408, 429, 500, 503])
    async def test_transient_statuses_are_retryable(self, status_code):
        executor = _executor(lambda request: httpx.Response(status_code, text="busy"))
        with pytest.raises(ClickHouseHttpError) as exc_info:
            await executor.execute("SELECT 1")
        assert exc_info.value.status_code == status_code
        assert not isinstance(exc_info.value, FatalExecutionError)

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(httpx.ConnectError):
            await _executor(handler).execute("SELECT 1")

    @pytest.mark.asyncio
    async def test_close_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        executor = ClickHouseHttpExecutor("http://clickhouse:8123", http_client=client)
        await executor.close()
        assert not client.is_closed
        await client.aclose()


class TestParseWrittenRows:
    @pytest.mark.parametrize(
        ("header", "expected"),
        [
            (None, 0),
            ("", 0),
            ('{"written_rows":"7"}', 7),
            ("not json", 0),
            ("[]", 0),
        ],
    )
    def test_parse(self, header, expected):
        assert parse_written_rows(header) == expected


class TestRunStatement:
    @pytest.mark.asyncio
    async def test_sync_executor_and_none_result(self):
        class SyncExecutor:
            def execute(self, statement):
                return None

        assert await run_statement(SyncExecutor(), "SELECT 1") == ExecutionOutcome()
