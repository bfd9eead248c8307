"""Plugin options: defaults, policy, and limits.

Options arrive partially populated (environment, host config, ``--set``
overrides).  :func:`normalize_backfill_options` is the single normalisation
step that turns any of those shapes into a fully-populated
:class:`BackfillPluginOptions`; nothing downstream ever sees a missing field.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from backfill_engine.errors import BackfillConfigError

logger = logging.getLogger(__name__)


class BackfillDefaults(BaseModel):
    """Execution defaults applied to newly created plans."""

    model_config = ConfigDict(extra="forbid")

    chunk_hours: float = Field(default=6.0, gt=0.0, description="Hours per chunk.")
    max_parallel_chunks: int = Field(default=1, ge=1, description="Concurrent chunk executions.")
    max_retries_per_chunk: int = Field(
        default=3,
        ge=1,
        description="Maximum number of execution attempts per chunk.",
    )
    require_idempotency_token: bool = Field(
        default=True,
        description="Reject statement templates that do not reference the chunk token.",
    )
    time_column: str = Field(default="event_time", min_length=1)
    retry_delay_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Base delay for exponential backoff between attempts (0 disables).",
    )
    retry_max_delay_seconds: float = Field(default=60.0, gt=0.0)
    default_window_hours: float = Field(
        default=24.0,
        gt=0.0,
        description="Size of the implicit window when an explicit one is not required.",
    )


class BackfillPolicy(BaseModel):
    """Safety policy.  Every boolean defaults to its strictest value."""

    model_config = ConfigDict(extra="forbid")

    require_explicit_window: bool = True
    block_overlapping_runs: bool = True
    fail_check_on_required_pending_backfill: bool = True
    required_targets: list[str] = Field(
        default_factory=list,
        description="Targets that must have a backfill plan before check passes.",
    )


class BackfillLimits(BaseModel):
    """Hard limits enforced at plan time and reported by the policy gate."""

    model_config = ConfigDict(extra="forbid")

    max_window_hours: float = Field(default=24.0 * 30, gt=0.0)
    min_chunk_minutes: float = Field(default=15.0, gt=0.0)
    stale_running_minutes: float = Field(
        default=60.0,
        gt=0.0,
        description="A chunk running longer than this is reported as stuck by doctor.",
    )


class BackfillPluginOptions(BaseModel):
    """Fully-resolved plugin options."""

    model_config = ConfigDict(extra="forbid")

    state_dir: Path | None = None
    defaults: BackfillDefaults = Field(default_factory=BackfillDefaults)
    policy: BackfillPolicy = Field(default_factory=BackfillPolicy)
    limits: BackfillLimits = Field(default_factory=BackfillLimits)


STRICT_POLICY = BackfillPolicy()

_POLICY_FLAGS: tuple[str, ...] = (
    "require_explicit_window",
    "block_overlapping_runs",
    "fail_check_on_required_pending_backfill",
)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def normalize_backfill_options(
    options: BackfillPluginOptions | Mapping[str, Any] | None = None,
) -> BackfillPluginOptions:
    """Return a fully-populated copy of *options*.

    Raises
    ------
    BackfillConfigError
        If any value is of the wrong type or out of range.
    """
    if options is None:
        return BackfillPluginOptions()
    if isinstance(options, BackfillPluginOptions):
        return options.model_copy(deep=True)
    try:
        return BackfillPluginOptions.model_validate(dict(options))
    except ValidationError as exc:
        raise BackfillConfigError(f"Invalid plugin options: {_format_validation_error(exc)}") from exc


def _deep_merge(base: dict[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_options(
    base: BackfillPluginOptions,
    runtime: Mapping[str, Any] | None,
) -> BackfillPluginOptions:
    """Overlay host-supplied runtime options on top of *base*."""
    if not runtime:
        return base.model_copy(deep=True)
    for section in ("defaults", "policy", "limits"):
        value = runtime.get(section)
        if value is not None and not isinstance(value, Mapping):
            raise BackfillConfigError(f'Invalid plugin option "{section}". Expected object.')
    merged = _deep_merge(base.model_dump(mode="python"), runtime)
    return normalize_backfill_options(merged)


def validate_base_options(options: BackfillPluginOptions) -> None:
    """Reject option combinations that can never produce a valid plan."""
    if options.defaults.chunk_hours * 60 < options.limits.min_chunk_minutes:
        raise BackfillConfigError(
            f"defaults.chunk_hours ({options.defaults.chunk_hours:g}) must be >= "
            f"limits.min_chunk_minutes ({options.limits.min_chunk_minutes:g}m)."
        )


def relaxed_policy_flags(policy: BackfillPolicy) -> list[str]:
    """Return the policy flags that are weaker than :data:`STRICT_POLICY`."""
    return [flag for flag in _POLICY_FLAGS if getattr(STRICT_POLICY, flag) and not getattr(policy, flag)]
