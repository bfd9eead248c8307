"""chkit CLI application -- Typer-based host for migration tooling plugins.

The host owns global flags, configuration loading, and the ``check``
command; plugins contribute sub-commands and policy checks through the hook
surface in :mod:`chkit_cli.plugins.base`.  Human-readable output goes to
*stderr* via Rich; ``--json`` payloads go to *stdout* so that pipelines can
compose cleanly.
"""

from __future__ import annotations

import json
from typing import Any, NoReturn

import typer
from rich.console import Console

from backfill_engine.errors import BackfillPersistenceError
from chkit_cli.logging_setup import configure_logging
from chkit_cli.payload import emit_json, error_payload
from chkit_cli.plugins.backfill import BackfillPlugin
from chkit_cli.plugins.base import ConfigLoadedContext, HostPlugin, PluginRuntime

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="chkit",
    help="chkit - ClickHouse schema migration toolkit",
    no_args_is_help=True,
)
console = Console(stderr=True)

_PLUGINS: list[HostPlugin] = [BackfillPlugin()]

for _plugin in _PLUGINS:
    app.add_typer(_plugin.typer_app, name=_plugin.manifest.name)

# Register the check command.
from chkit_cli.commands.check import check_command  # noqa: E402

app.command(name="check")(check_command)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_verbose: bool = False
_overrides: dict[str, Any] = {}


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


def parse_overrides(values: list[str]) -> dict[str, Any]:
    """Turn ``KEY=VALUE`` pairs into a nested mapping.

    Dotted keys nest (``defaults.chunk_hours=12`` becomes
    ``{"defaults": {"chunk_hours": 12}}``).  Values are parsed as JSON when
    possible and kept as strings otherwise.

    Raises
    ------
    typer.BadParameter
        If an entry has no ``=`` or an empty key segment.
    """
    result: dict[str, Any] = {}
    for raw in values:
        key, sep, value = raw.partition("=")
        parts = key.strip().split(".")
        if not sep or not all(parts):
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{raw}'.", param_hint="--set")
        try:
            parsed: Any = json.loads(value)
        except json.JSONDecodeError:
            parsed = value

        node = result
        for part in parts[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise typer.BadParameter(f"'{key}' conflicts with an earlier --set value.", param_hint="--set")
            node = child
        node[parts[-1]] = parsed
    return result


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
    set_values: list[str] = typer.Option(
        [],
        "--set",
        help="Override a plugin option, e.g. --set defaults.chunk_hours=12 (repeatable).",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _verbose, _overrides  # noqa: PLW0603
    _json_output = json_mode
    _verbose = verbose
    _overrides = parse_overrides(set_values)
    configure_logging(verbose=verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _print_line(line: str) -> None:
    console.print(line, markup=False, highlight=False)


def load_runtime() -> PluginRuntime:
    """Load settings and hand them to every plugin.

    Raises
    ------
    BackfillConfigError
        If the environment or the ``--set`` overrides are invalid.
    """
    from backfill_engine.config import load_settings

    settings = load_settings()
    configure_logging(verbose=_verbose or settings.debug, structured=settings.structured_logging)
    runtime = PluginRuntime(_PLUGINS, print_line=_print_line)
    runtime.config_loaded(
        ConfigLoadedContext(settings=settings, runtime_options=_overrides, json_output=_json_output)
    )
    return runtime


def exit_code_for(exc: Exception) -> int:
    """Persistence failures abort a run (1); every other refusal exits 2."""
    if isinstance(exc, BackfillPersistenceError):
        return 1
    return 2


def fail(command: str, exc: Exception) -> NoReturn:
    """Report *exc* for *command* and exit with the matching code."""
    if _json_output:
        emit_json(error_payload(command, exc))
    else:
        console.print(f"[red]{command} failed:[/red] {exc}")
    raise typer.Exit(code=exit_code_for(exc)) from exc
