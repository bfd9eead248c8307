"""Host plugin contract.

A plugin exposes a Typer sub-application plus three hooks the host invokes
explicitly through :class:`PluginRuntime`:

* ``on_config_loaded(ctx)`` once configuration has been resolved,
* ``await on_check(ctx)`` during ``chkit check``,
* ``on_check_report(result, print_line)`` after the host printed the check
  summary, for extra plugin diagnostics.

There is no implicit registration: the host passes its plugin list to the
runtime.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import typer

from backfill_engine.checks.models import PolicyCheckResult
from backfill_engine.config import Settings

logger = logging.getLogger(__name__)

PrintLine = Callable[[str], None]


@dataclass(frozen=True)
class PluginManifest:
    """Static plugin metadata; ``name`` is also the CLI sub-command name."""

    name: str
    version: str
    description: str = ""


@dataclass(frozen=True)
class ConfigLoadedContext:
    """Resolved configuration handed to ``on_config_loaded``.

    ``runtime_options`` carries the nested ``--set KEY=VALUE`` overrides.
    """

    settings: Settings
    runtime_options: Mapping[str, Any] = field(default_factory=dict)
    json_output: bool = False


@dataclass(frozen=True)
class CheckContext:
    json_output: bool = False


@runtime_checkable
class HostPlugin(Protocol):
    """Structural interface every chkit plugin implements."""

    @property
    def manifest(self) -> PluginManifest: ...

    @property
    def typer_app(self) -> typer.Typer: ...

    def on_config_loaded(self, ctx: ConfigLoadedContext) -> None: ...

    async def on_check(self, ctx: CheckContext) -> PolicyCheckResult | None: ...

    def on_check_report(self, result: PolicyCheckResult, print_line: PrintLine) -> None: ...


class PluginRuntime:
    """Calls plugin hooks in registration order.

    Parameters
    ----------
    plugins:
        Plugins to drive.  Names must be unique.
    print_line:
        Output sink forwarded to ``on_check_report``.
    """

    def __init__(self, plugins: list[HostPlugin], print_line: PrintLine) -> None:
        names = [p.manifest.name for p in plugins]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate plugin name(s): {', '.join(duplicates)}")
        self._plugins = list(plugins)
        self._print_line = print_line

    @property
    def plugins(self) -> list[HostPlugin]:
        return list(self._plugins)

    def get(self, name: str) -> HostPlugin:
        for plugin in self._plugins:
            if plugin.manifest.name == name:
                return plugin
        raise KeyError(name)

    def config_loaded(self, ctx: ConfigLoadedContext) -> None:
        for plugin in self._plugins:
            logger.debug("on_config_loaded: %s", plugin.manifest.name)
            plugin.on_config_loaded(ctx)

    async def check(self, ctx: CheckContext) -> list[PolicyCheckResult]:
        """Collect ``on_check`` results; plugins returning ``None`` are omitted."""
        results: list[PolicyCheckResult] = []
        for plugin in self._plugins:
            logger.debug("on_check: %s", plugin.manifest.name)
            result = await plugin.on_check(ctx)
            if result is not None:
                results.append(result)
        return results

    def check_report(self, results: list[PolicyCheckResult]) -> None:
        by_name = {r.plugin: r for r in results}
        for plugin in self._plugins:
            result = by_name.get(plugin.manifest.name)
            if result is not None:
                plugin.on_check_report(result, self._print_line)
