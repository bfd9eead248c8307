"""Backfill planning: window resolution, chunking, and statement templates."""

from backfill_engine.planner.plan_builder import (
    BuildBackfillPlanOutput,
    build_backfill_plan,
    build_chunks,
    resolve_window,
)
from backfill_engine.planner.sql_template import DEFAULT_TEMPLATE, render_template, validate_template

__all__ = [
    "DEFAULT_TEMPLATE",
    "BuildBackfillPlanOutput",
    "build_backfill_plan",
    "build_chunks",
    "render_template",
    "resolve_window",
    "validate_template",
]
