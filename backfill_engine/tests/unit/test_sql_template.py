"""Unit tests for backfill_engine.planner.sql_template."""

from __future__ import annotations

import pytest

from backfill_engine.errors import BackfillConfigError, BackfillIdempotencyError
from backfill_engine.planner.sql_template import (
    DEFAULT_TEMPLATE,
    KNOWN_PLACEHOLDERS,
    render_template,
    template_placeholders,
    validate_template,
)

_PARAMS = {
    "target": "analytics.events",
    "start": "2024-01-01T00:00:00.000Z",
    "end": "2024-01-02T00:00:00.000Z",
    "time_column": "event_time",
    "plan_id": "0123456789abcdef",
    "chunk_id": "fedcba9876543210",
    "idempotency_token": "a" * 64,
}


class TestValidateTemplate:
    def test_default_template_is_valid(self):
        validate_template(DEFAULT_TEMPLATE, require_idempotency_token=True)
        assert template_placeholders(DEFAULT_TEMPLATE) <= KNOWN_PLACEHOLDERS

    def test_empty_template_is_rejected(self):
        with pytest.raises(BackfillConfigError, match="empty"):
            validate_template("   ", require_idempotency_token=False)

    def test_unknown_placeholder_is_rejected(self):
        with pytest.raises(BackfillConfigError, match="partition"):
            validate_template("SELECT {{ partition }} {{ idempotency_token }}", require_idempotency_token=True)

    def test_missing_token_is_idempotency_error(self):
        with pytest.raises(BackfillIdempotencyError):
            validate_template("INSERT INTO {{ target }} SELECT 1", require_idempotency_token=True)

    def test_idempotency_error_is_a_config_error(self):
        assert issubclass(BackfillIdempotencyError, BackfillConfigError)


class TestRenderTemplate:
    def test_default_template_renders_every_placeholder(self):
        rendered = render_template(DEFAULT_TEMPLATE, _PARAMS)
        assert "{{" not in rendered
        assert "INSERT INTO analytics.events" in rendered
        assert "event_time >= parseDateTimeBestEffort('2024-01-01T00:00:00.000Z')" in rendered
        assert f"insert_deduplication_token='{'a' * 64}'" in rendered

    def test_quoted_values_are_escaped(self):
        rendered = render_template("SELECT '{{ target }}'", {"target": "it's"})
        assert rendered == "SELECT 'it''s'"

    def test_whitespace_inside_braces_is_optional(self):
        assert render_template("{{target}}|{{  target  }}", {"target": "db.t"}) == "db.t|db.t"

    def test_dangerous_unquoted_value_is_rejected(self):
        with pytest.raises(BackfillConfigError, match="dangerous"):
            render_template("SELECT * FROM {{ target }}", {"target": "t; DROP TABLE users"})

    def test_dangerous_value_is_allowed_when_quoted(self):
        rendered = render_template("SELECT '{{ target }}'", {"target": "DROP"})
        assert rendered == "SELECT 'DROP'"
