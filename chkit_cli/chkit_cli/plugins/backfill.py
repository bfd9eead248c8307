"""The ``backfill`` plugin: ``chkit backfill plan|run|resume|status|cancel|doctor``.

Commands follow the host conventions: Rich output on stderr, a versioned JSON
payload on stdout with ``--json``, exit code 2 for refused commands and 1 when
a run ends with failed chunks.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, cast

import typer

from backfill_engine.checks.models import PolicyCheckResult
from backfill_engine.errors import BackfillConfigError, BackfillError
from backfill_engine.models.plan import BackfillStatus
from chkit_cli.plugins.base import CheckContext, ConfigLoadedContext, PluginManifest, PrintLine

if TYPE_CHECKING:
    from backfill_engine.config import Settings
    from backfill_engine.executor.http_executor import ClickHouseHttpExecutor
    from backfill_engine.options import BackfillPluginOptions
    from backfill_engine.runtime import ExecuteBackfillRunOutput, ExecutionOptions
    from backfill_engine.state.store import BackfillStateStore

logger = logging.getLogger(__name__)

PLUGIN_VERSION = "0.1.0"

_TARGET_PATTERN = re.compile(r"^[A-Za-z0-9_]+\.[A-Za-z0-9_]+$")
_PLAN_ID_PATTERN = re.compile(r"^[0-9a-f]{16}$")

backfill_app = typer.Typer(
    name="backfill",
    help="Plan and execute chunked, resumable backfills.",
    no_args_is_help=True,
)


# ---------------------------------------------------------------------------
# Plugin
# ---------------------------------------------------------------------------


class BackfillPlugin:
    """Host plugin wrapping :mod:`backfill_engine`."""

    def __init__(self) -> None:
        self._settings: Settings | None = None
        self._options: BackfillPluginOptions | None = None

    @property
    def manifest(self) -> PluginManifest:
        return PluginManifest(
            name="backfill",
            version=PLUGIN_VERSION,
            description="Chunked, resumable, idempotent time-window backfills.",
        )

    @property
    def typer_app(self) -> typer.Typer:
        return backfill_app

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            raise BackfillConfigError("Backfill plugin used before configuration was loaded.")
        return self._settings

    @property
    def options(self) -> BackfillPluginOptions:
        if self._options is None:
            raise BackfillConfigError("Backfill plugin used before configuration was loaded.")
        return self._options

    @property
    def store(self) -> BackfillStateStore:
        from backfill_engine.state.store import BackfillStateStore

        return BackfillStateStore(self.settings.backfill_state_dir())

    # -- hooks -------------------------------------------------------------

    def on_config_loaded(self, ctx: ConfigLoadedContext) -> None:
        """Resolve plugin options: settings first, then ``--set`` overrides."""
        from backfill_engine.options import merge_options, validate_base_options

        options = merge_options(ctx.settings.backfill, ctx.runtime_options)
        validate_base_options(options)
        self._settings = ctx.settings
        self._options = options
        logger.debug("Backfill state dir: %s", ctx.settings.backfill_state_dir())

    async def on_check(self, ctx: CheckContext) -> PolicyCheckResult | None:
        from backfill_engine.checks import evaluate_backfill_check

        return await evaluate_backfill_check(self.store, self.options)

    def on_check_report(self, result: PolicyCheckResult, print_line: PrintLine) -> None:
        if result.ok:
            print_line("backfill check: ok")
        else:
            print_line(f"backfill check: failed ({', '.join(result.error_codes)})")
        plan_count = result.metadata.get("plan_count", 0)
        pending = result.metadata.get("required_count", 0)
        print_line(f"backfill plans: {plan_count} total, {pending} pending completion")

    # -- execution ---------------------------------------------------------

    def build_executor(self) -> ClickHouseHttpExecutor:
        from backfill_engine.executor.http_executor import ClickHouseHttpExecutor

        settings = self.settings
        if not settings.clickhouse_url:
            raise BackfillConfigError("No ClickHouse endpoint configured. Set CHKIT_CLICKHOUSE_URL.")
        password = settings.clickhouse_password.get_secret_value() if settings.clickhouse_password else None
        return ClickHouseHttpExecutor(
            settings.clickhouse_url,
            database=settings.clickhouse_database,
            user=settings.clickhouse_user,
            password=password,
            timeout=settings.query_timeout_seconds,
        )

    async def execute(self, plan_id: str, execution: ExecutionOptions, *, resume: bool) -> ExecuteBackfillRunOutput:
        """Run or resume *plan_id* against the configured database.

        Without an endpoint, a simulated run executes no statements.  A missing
        plan is reported before the endpoint is checked.
        """
        from backfill_engine.runtime import execute_backfill_run, resume_backfill_run

        self.store.load_plan(plan_id)
        executor = None
        if self.settings.is_clickhouse_configured() or execution.simulation is None:
            executor = self.build_executor()

        entry = resume_backfill_run if resume else execute_backfill_run
        try:
            return await entry(
                plan_id=plan_id,
                store=self.store,
                options=self.options,
                executor=executor,
                execution=execution,
                active_environment=self.settings.environment_fingerprint(),
                lock_ttl_seconds=self.settings.lock_ttl_seconds,
                handle_signals=True,
            )
        finally:
            if executor is not None:
                await executor.close()


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _context() -> tuple[BackfillPlugin, bool]:
    from chkit_cli.app import _json_output, load_runtime

    runtime = load_runtime()
    return cast(BackfillPlugin, runtime.get("backfill")), _json_output


def _validate_target(target: str) -> None:
    if not _TARGET_PATTERN.match(target):
        raise BackfillConfigError(f"Invalid --target '{target}'. Expected <database>.<table>.")


def _validate_plan_id(plan_id: str) -> None:
    if not _PLAN_ID_PATTERN.match(plan_id):
        raise BackfillConfigError(f"Invalid --plan-id '{plan_id}'. Expected 16 lowercase hex characters.")


def _parse_timestamp(value: str | None, label: str) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise BackfillConfigError(f"Invalid {label} timestamp '{value}': {exc}") from exc


def _read_template(sql_template: str | None, sql_file: Path | None) -> str | None:
    if sql_template is not None and sql_file is not None:
        raise BackfillConfigError("Use either --sql-template or --sql-file, not both.")
    if sql_file is None:
        return sql_template
    try:
        return sql_file.read_text(encoding="utf-8")
    except OSError as exc:
        raise BackfillConfigError(f"Cannot read --sql-file {sql_file}: {exc}") from exc


def _resolve_simulated_chunk(plugin: BackfillPlugin, plan_id: str, chunk: str) -> str:
    """Accept a chunk id or a 1-based chunk position in the plan."""
    plan = plugin.store.load_plan(plan_id)
    if plan.chunk_by_id(chunk) is not None:
        return chunk
    if chunk.isdigit():
        index = int(chunk)
        if not 1 <= index <= len(plan.chunks):
            raise BackfillConfigError(f"--simulate-fail-chunk {chunk} is out of range (1..{len(plan.chunks)}).")
        return plan.chunks[index - 1].id
    raise BackfillConfigError(f"--simulate-fail-chunk {chunk} is not a chunk of plan {plan_id}.")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@backfill_app.command(name="plan")
def plan_command(
    target: str = typer.Option(..., "--target", help="Target table as <database>.<table>."),
    from_: str | None = typer.Option(None, "--from", help="Window start (ISO-8601, inclusive)."),
    to: str | None = typer.Option(None, "--to", help="Window end (ISO-8601, exclusive)."),
    chunk_hours: float | None = typer.Option(None, "--chunk-hours", help="Chunk size in hours."),
    time_column: str | None = typer.Option(None, "--time-column", help="Column the window filters on."),
    sql_template: str | None = typer.Option(None, "--sql-template", help="Statement template with {{ }} params."),
    sql_file: Path | None = typer.Option(
        None, "--sql-file", exists=True, dir_okay=False, help="File containing the statement template."
    ),
    force_large_window: bool = typer.Option(
        False, "--force-large-window", help="Allow a window longer than limits.max_window_hours."
    ),
) -> None:
    """Create (or return the existing) deterministic backfill plan."""
    from backfill_engine.planner import build_backfill_plan
    from chkit_cli.app import console, fail
    from chkit_cli.display import display_plan
    from chkit_cli.payload import build_payload, emit_json

    command = "backfill plan"
    try:
        _validate_target(target)
        start = _parse_timestamp(from_, "--from")
        end = _parse_timestamp(to, "--to")
        template = _read_template(sql_template, sql_file)
        plugin, json_output = _context()
        output = build_backfill_plan(
            target=target,
            store=plugin.store,
            options=plugin.options,
            start=start,
            end=end,
            chunk_hours=chunk_hours,
            time_column=time_column,
            sql_template=template,
            force_large_window=force_large_window,
            environment=plugin.settings.environment_fingerprint(),
        )
    except BackfillError as exc:
        fail(command, exc)

    if json_output:
        emit_json(
            build_payload(
                command,
                plan=output.plan,
                plan_path=str(output.plan_path),
                existed=output.existed,
            )
        )
    else:
        display_plan(console, output)


def _run(
    command: str,
    *,
    plan_id: str,
    resume: bool,
    replay_done: bool,
    replay_failed: bool,
    skip_failed: bool,
    force_overlap: bool,
    force_compatibility: bool,
    force_environment: bool,
    simulate_fail_chunk: str | None,
    simulate_fail_count: int,
    dry_run: bool,
) -> None:
    from backfill_engine.executor.coordinator import SimulationDirective
    from backfill_engine.runtime import ExecutionOptions, preview_backfill_run
    from chkit_cli.app import console, fail
    from chkit_cli.display import display_preview, display_run_result
    from chkit_cli.payload import build_payload, emit_json

    try:
        _validate_plan_id(plan_id)
        plugin, json_output = _context()
        simulation = None
        if simulate_fail_chunk is not None:
            simulation = SimulationDirective(
                fail_chunk_id=_resolve_simulated_chunk(plugin, plan_id, simulate_fail_chunk),
                fail_count=simulate_fail_count,
            )
        execution = ExecutionOptions(
            replay_done=replay_done,
            replay_failed=replay_failed,
            skip_failed=skip_failed,
            force_overlap=force_overlap,
            force_compatibility=force_compatibility,
            force_environment=force_environment,
            simulation=simulation,
        )
        if dry_run:
            preview = preview_backfill_run(plan_id=plan_id, store=plugin.store, execution=execution)
        else:
            output = asyncio.run(plugin.execute(plan_id, execution, resume=resume))
    except BackfillError as exc:
        fail(command, exc)

    if dry_run:
        if json_output:
            emit_json(build_payload(command, dry_run=True, preview=preview))
        else:
            display_preview(console, preview)
        return

    failed = output.run.status == BackfillStatus.FAILED
    if json_output:
        emit_json(
            build_payload(
                command,
                ok=not failed,
                noop=output.noop,
                run=output.run,
                status=output.status,
                run_path=str(output.run_path),
                event_path=str(output.event_path),
            )
        )
    else:
        display_run_result(console, output)

    if failed:
        raise typer.Exit(code=1)


_REPLAY_DONE = typer.Option(False, "--replay-done", help="Re-execute chunks already done.")
_REPLAY_FAILED = typer.Option(False, "--replay-failed", help="Retry chunks that failed.")
_SKIP_FAILED = typer.Option(False, "--skip-failed", help="Mark failed chunks skipped instead of retrying them.")
_FORCE_OVERLAP = typer.Option(False, "--force-overlap", help="Run despite an overlapping active run.")
_FORCE_COMPATIBILITY = typer.Option(
    False, "--force-compatibility", help="Resume despite changed options (adopts the new options)."
)
_FORCE_ENVIRONMENT = typer.Option(False, "--force-environment", help="Run against a different database.")
_SIMULATE_FAIL_CHUNK = typer.Option(
    None, "--simulate-fail-chunk", help="Testing: chunk id (or 1-based position) to fail."
)
_SIMULATE_FAIL_COUNT = typer.Option(
    1, "--simulate-fail-count", min=0, help="Testing: number of attempts of that chunk to fail."
)
_DRY_RUN = typer.Option(False, "--dry-run", help="Print the statements that would run; change nothing.")


@backfill_app.command(name="run")
def run_command(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan to execute."),
    replay_done: bool = _REPLAY_DONE,
    replay_failed: bool = _REPLAY_FAILED,
    skip_failed: bool = _SKIP_FAILED,
    force_overlap: bool = _FORCE_OVERLAP,
    force_compatibility: bool = _FORCE_COMPATIBILITY,
    force_environment: bool = _FORCE_ENVIRONMENT,
    simulate_fail_chunk: str | None = _SIMULATE_FAIL_CHUNK,
    simulate_fail_count: int = _SIMULATE_FAIL_COUNT,
    dry_run: bool = _DRY_RUN,
) -> None:
    """Execute a plan, starting a new run or continuing the existing one."""
    _run(
        "backfill run",
        plan_id=plan_id,
        resume=False,
        replay_done=replay_done,
        replay_failed=replay_failed,
        skip_failed=skip_failed,
        force_overlap=force_overlap,
        force_compatibility=force_compatibility,
        force_environment=force_environment,
        simulate_fail_chunk=simulate_fail_chunk,
        simulate_fail_count=simulate_fail_count,
        dry_run=dry_run,
    )


@backfill_app.command(name="resume")
def resume_command(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan whose run to resume."),
    replay_done: bool = _REPLAY_DONE,
    replay_failed: bool = _REPLAY_FAILED,
    skip_failed: bool = _SKIP_FAILED,
    force_overlap: bool = _FORCE_OVERLAP,
    force_compatibility: bool = _FORCE_COMPATIBILITY,
    force_environment: bool = _FORCE_ENVIRONMENT,
    simulate_fail_chunk: str | None = _SIMULATE_FAIL_CHUNK,
    simulate_fail_count: int = _SIMULATE_FAIL_COUNT,
    dry_run: bool = _DRY_RUN,
) -> None:
    """Resume an existing run; done chunks are kept unless --replay-done."""
    _run(
        "backfill resume",
        plan_id=plan_id,
        resume=True,
        replay_done=replay_done,
        replay_failed=replay_failed,
        skip_failed=skip_failed,
        force_overlap=force_overlap,
        force_compatibility=force_compatibility,
        force_environment=force_environment,
        simulate_fail_chunk=simulate_fail_chunk,
        simulate_fail_count=simulate_fail_count,
        dry_run=dry_run,
    )


@backfill_app.command(name="status")
def status_command(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan to summarise."),
) -> None:
    """Show chunk totals and run status for a plan."""
    from backfill_engine.runtime import get_backfill_status
    from chkit_cli.app import console, fail
    from chkit_cli.display import display_status
    from chkit_cli.payload import build_payload, emit_json

    command = "backfill status"
    try:
        _validate_plan_id(plan_id)
        plugin, json_output = _context()
        summary = get_backfill_status(
            plan_id=plan_id,
            store=plugin.store,
            lock_ttl_seconds=plugin.settings.lock_ttl_seconds,
        )
    except BackfillError as exc:
        fail(command, exc)

    if json_output:
        emit_json(build_payload(command, status=summary))
    else:
        display_status(console, summary)


@backfill_app.command(name="cancel")
def cancel_command(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan whose run to cancel."),
) -> None:
    """Cancel a run; a live run stops after its in-flight attempts finish."""
    from backfill_engine.runtime import cancel_backfill_run
    from chkit_cli.app import console, fail
    from chkit_cli.display import display_cancel
    from chkit_cli.payload import build_payload, emit_json

    command = "backfill cancel"
    try:
        _validate_plan_id(plan_id)
        plugin, json_output = _context()
        output = cancel_backfill_run(
            plan_id=plan_id,
            store=plugin.store,
            lock_ttl_seconds=plugin.settings.lock_ttl_seconds,
        )
    except BackfillError as exc:
        fail(command, exc)

    if json_output:
        emit_json(build_payload(command, deferred=output.deferred, status=output.status))
    else:
        display_cancel(console, output)


@backfill_app.command(name="doctor")
def doctor_command(
    plan_id: str = typer.Option(..., "--plan-id", help="Plan to diagnose."),
) -> None:
    """Diagnose a plan/run and print recovery recommendations."""
    from backfill_engine.runtime import get_backfill_doctor_report
    from chkit_cli.app import console, fail
    from chkit_cli.display import display_doctor_report
    from chkit_cli.payload import build_payload, emit_json

    command = "backfill doctor"
    try:
        _validate_plan_id(plan_id)
        plugin, json_output = _context()
        report = get_backfill_doctor_report(
            plan_id=plan_id,
            store=plugin.store,
            options=plugin.options,
            active_environment=plugin.settings.environment_fingerprint(),
            lock_ttl_seconds=plugin.settings.lock_ttl_seconds,
        )
    except BackfillError as exc:
        fail(command, exc)

    if json_output:
        emit_json(build_payload(command, report=report, healthy=report.healthy))
    else:
        display_doctor_report(console, report)
