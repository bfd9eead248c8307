"""``chkit check`` -- run every plugin's preflight policy check.

Exit codes:

* 0 -- every plugin reported ``ok``.
* 1 -- at least one plugin reported an ``error``-severity finding.
* 2 -- configuration could not be loaded.
"""

from __future__ import annotations

import asyncio

import typer

from backfill_engine.errors import BackfillError


def check_command() -> None:
    """Evaluate plugin policy checks against the current state."""
    from chkit_cli.app import _json_output, console, fail, load_runtime
    from chkit_cli.display import display_check_result
    from chkit_cli.payload import build_payload, emit_json
    from chkit_cli.plugins.base import CheckContext

    try:
        runtime = load_runtime()
        results = asyncio.run(runtime.check(CheckContext(json_output=_json_output)))
    except BackfillError as exc:
        fail("check", exc)

    ok = all(result.ok for result in results)
    if _json_output:
        emit_json(build_payload("check", ok=ok, plugins=[r.model_dump(mode="json") for r in results]))
    else:
        for result in results:
            display_check_result(console, result)
        console.print()

    runtime.check_report(results)

    if not ok:
        raise typer.Exit(code=1)
