"""Rich-based display helpers for chkit CLI output.

All human-readable output is rendered to *stderr* via a Rich Console so that
*stdout* remains available for JSON payloads.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from backfill_engine.checks.models import PolicyCheckResult
    from backfill_engine.models.run import BackfillRunState
    from backfill_engine.models.summary import BackfillStatusSummary, DoctorReport
    from backfill_engine.planner.plan_builder import BuildBackfillPlanOutput
    from backfill_engine.runtime import CancelOutput, ExecuteBackfillRunOutput, PreviewOutput

# ---------------------------------------------------------------------------
# Status colours
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "planned": "cyan",
    "pending": "dim",
    "running": "yellow",
    "paused": "yellow",
    "done": "green",
    "completed": "green",
    "failed": "red",
    "skipped": "dim",
    "cancelled": "dim red",
}

_SEVERITY_COLOURS: dict[str, str] = {
    "error": "red",
    "warn": "yellow",
    "info": "blue",
}

_SEVERITY_ICONS: dict[str, str] = {
    "error": "✗",
    "warn": "⚠",
    "info": "ℹ",
}


def _coloured_status(status: str) -> str:
    """Wrap a status string in Rich markup for colour."""
    colour = _STATUS_COLOURS.get(status.lower(), "white")
    return f"[{colour}]{status}[/{colour}]"


def _format_ts(value: object) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M")  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def display_plan(console: Console, output: BuildBackfillPlanOutput) -> None:
    """Render a plan header followed by its chunk table.

    Parameters
    ----------
    console:
        Rich console to write to.
    output:
        Result of ``build_backfill_plan``.
    """
    plan = output.plan
    header_lines = [
        f"[bold]Plan:[/bold]     {plan.plan_id}",
        f"[bold]Target:[/bold]   {plan.target}",
        f"[bold]Window:[/bold]   {plan.start.isoformat()} .. {plan.end.isoformat()}",
        f"[bold]Chunking:[/bold] {plan.options.chunk_hours:g}h on {plan.options.time_column}, "
        f"{plan.options.max_parallel_chunks} parallel, {plan.options.max_retries_per_chunk} attempt(s) per chunk",
    ]
    if plan.environment is not None:
        header_lines.append(f"[bold]Bound to:[/bold] {plan.environment.describe()}")
    if plan.forced_large_window:
        header_lines.append("[yellow]Window exceeds limits.max_window_hours (forced).[/yellow]")
    title = "Existing Backfill Plan" if output.existed else "Backfill Plan"
    console.print(Panel("\n".join(header_lines), title=title, expand=False))

    table = Table(title="Chunks", show_lines=False, pad_edge=True, expand=False)
    table.add_column("#", style="dim", width=4, justify="right")
    table.add_column("Chunk", style="bold")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Token", style="dim")

    for idx, chunk in enumerate(plan.chunks, start=1):
        table.add_row(
            str(idx),
            chunk.id,
            _format_ts(chunk.start),
            _format_ts(chunk.end),
            chunk.idempotency_token[:12],
        )

    console.print(table)
    console.print(f"\n[bold]{len(plan.chunks)}[/bold] chunk(s) written to {output.plan_path}")


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


def display_status(console: Console, summary: BackfillStatusSummary) -> None:
    """Render a status summary panel."""
    totals = summary.totals
    lines = [
        f"[bold]Plan:[/bold]    {summary.plan_id}",
        f"[bold]Target:[/bold]  {summary.target}",
        f"[bold]Status:[/bold]  {_coloured_status(summary.status.value)}"
        + ("  [yellow](live)[/yellow]" if summary.active else "")
        + ("  [dim red](cancel requested)[/dim red]" if summary.cancel_requested else ""),
        f"[bold]Chunks:[/bold]  {totals.total} total, [green]{totals.done} done[/green], "
        f"{totals.pending} pending, {totals.running} running, "
        f"[red]{totals.failed} failed[/red], {totals.skipped} skipped",
        f"[bold]Attempts:[/bold] {summary.attempts}   [bold]Rows written:[/bold] {summary.rows_written}",
        f"[bold]Updated:[/bold] {_format_ts(summary.updated_at)}",
    ]
    if summary.last_error:
        lines.append(f"[red]Last error:[/red] {summary.last_error}")
    console.print(Panel("\n".join(lines), title="Backfill Status", expand=False))


def _chunk_table(run: BackfillRunState) -> Table:
    table = Table(title="Chunks", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Chunk", style="bold")
    table.add_column("Window")
    table.add_column("Status")
    table.add_column("Attempts", justify="center")
    table.add_column("Rows", justify="right")
    table.add_column("Last Error")

    for chunk in run.chunks:
        table.add_row(
            chunk.id,
            f"{_format_ts(chunk.start)} .. {_format_ts(chunk.end)}",
            _coloured_status(chunk.status.value),
            str(chunk.attempts),
            str(chunk.rows_written),
            chunk.last_error or "-",
        )
    return table


# ---------------------------------------------------------------------------
# Run / resume
# ---------------------------------------------------------------------------


def display_run_result(console: Console, output: ExecuteBackfillRunOutput) -> None:
    """Render the outcome of a run or resume."""
    if output.noop:
        console.print(f"[dim]Run for plan {output.run.plan_id} already completed; nothing to do.[/dim]")
        display_status(console, output.status)
        return

    console.print(_chunk_table(output.run))

    totals = output.status.totals
    parts: list[str] = [f"[bold]{totals.total}[/bold] chunk(s)"]
    if totals.done:
        parts.append(f"[green]{totals.done} done[/green]")
    if totals.failed:
        parts.append(f"[red]{totals.failed} failed[/red]")
    if totals.skipped:
        parts.append(f"[dim]{totals.skipped} skipped[/dim]")
    if totals.pending:
        parts.append(f"{totals.pending} pending")
    parts.append(f"run {_coloured_status(output.status.status.value)}")
    console.print(" | ".join(parts))
    console.print(f"[dim]Run state: {output.run_path}  Events: {output.event_path}[/dim]")


def display_preview(console: Console, preview: PreviewOutput) -> None:
    """Render the statements a run would execute (``--dry-run``)."""
    if not preview.chunks:
        console.print(f"[dim]No chunks would be executed for plan {preview.plan_id}.[/dim]")
    for chunk in preview.chunks:
        console.print(
            Panel(
                chunk.statement,
                title=f"{chunk.chunk_id}  {_format_ts(chunk.start)} .. {_format_ts(chunk.end)}",
                expand=False,
            )
        )
    if preview.skipped_chunk_ids:
        console.print(f"[dim]Would skip failed chunk(s): {', '.join(preview.skipped_chunk_ids)}[/dim]")
    console.print(f"\n[bold]{len(preview.chunks)}[/bold] statement(s) would be executed (dry run).")


def display_cancel(console: Console, output: CancelOutput) -> None:
    if output.deferred:
        console.print(
            f"[yellow]Cancel requested for plan {output.status.plan_id}; "
            "the live run stops after its in-flight attempts finish.[/yellow]"
        )
    else:
        console.print(f"Run for plan {output.status.plan_id} is {_coloured_status(output.status.status.value)}.")


# ---------------------------------------------------------------------------
# Doctor
# ---------------------------------------------------------------------------


def display_doctor_report(console: Console, report: DoctorReport) -> None:
    """Render doctor issue codes with their recommendations.

    Parameters
    ----------
    console:
        Rich console to write to.
    report:
        Diagnosis produced by ``get_backfill_doctor_report``.
    """
    display_status(console, report.summary)

    if report.healthy:
        console.print("\n  [green]✓ No issues found.[/green]")
    else:
        console.print("\n  [bold]Issues[/bold]")
        for code in report.issue_codes:
            console.print(f"    [red]✗ {code}[/red]")
        if report.failed_chunk_ids:
            console.print(f"    [dim]failed chunk(s): {', '.join(report.failed_chunk_ids)}[/dim]")
        if report.stale_chunk_ids:
            console.print(f"    [dim]stale running chunk(s): {', '.join(report.stale_chunk_ids)}[/dim]")

    console.print("\n  [bold]Recommendations[/bold]")
    for recommendation in report.recommendations:
        console.print(f"    [dim]→[/dim] {recommendation}")
    console.print()


# ---------------------------------------------------------------------------
# Check
# ---------------------------------------------------------------------------


def display_check_result(console: Console, result: PolicyCheckResult) -> None:
    """Render one plugin's policy findings.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    result:
        Findings returned by the plugin's ``on_check`` hook.
    """
    status = "[green]PASSED[/green]" if result.ok else "[red]FAILED[/red]"
    console.print(f"\n{result.plugin} policy - {status}")

    if not result.findings:
        console.print("  [green]✓ No findings.[/green]")
        return

    for finding in result.findings:
        severity = finding.severity.value
        icon = _SEVERITY_ICONS.get(severity, "?")
        colour = _SEVERITY_COLOURS.get(severity, "white")
        console.print(f"  [{colour}]{icon} {finding.code.value}[/{colour}]  {finding.message}")

    counts = {severity: 0 for severity in _SEVERITY_COLOURS}
    for finding in result.findings:
        counts[finding.severity.value] += 1
    console.print(f"── {counts['error']} error(s), {counts['warn']} warning(s), {counts['info']} info(s)")
