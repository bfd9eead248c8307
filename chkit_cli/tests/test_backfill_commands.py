"""Tests for the ``chkit backfill`` sub-commands.

Commands run through ``typer.testing.CliRunner`` against a temporary state
directory.  Runs either use the ``clickhouse`` fake executor or, offline, a
simulated run that executes no statements.
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import pytest
from typer.testing import CliRunner

from backfill_engine.models.plan import BackfillPlanState
from chkit_cli.app import app
from chkit_cli.plugins.backfill import _resolve_simulated_chunk

runner = CliRunner()

WINDOW = ["--from", "2024-01-01T00:00:00Z", "--to", "2024-01-03T00:00:00Z"]


def _extract_json(raw: str) -> dict:
    """Extract the JSON payload from CLI output that may also hold log lines."""
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        raise ValueError(f"No JSON found in output: {raw[:200]!r}")
    return json.loads(raw[start : end + 1])


def _invoke_json(*args: str):
    result = runner.invoke(app, ["--json", *args])
    return result, _extract_json(result.stdout)


def _create_plan(*extra: str) -> dict:
    result, payload = _invoke_json(
        "backfill", "plan", "--target", "analytics.events", *WINDOW, "--chunk-hours", "24", *extra
    )
    assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
    return payload["plan"]


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------


class TestPlanCommand:
    def test_creates_plan(self, state_dir):
        result, payload = _invoke_json(
            "backfill", "plan", "--target", "analytics.events", *WINDOW, "--chunk-hours", "24"
        )
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert payload["ok"] is True
        assert payload["command"] == "backfill plan"
        assert payload["payload_version"] == 1
        assert payload["existed"] is False
        assert len(payload["plan"]["chunks"]) == 2
        assert payload["plan_path"].startswith(str(state_dir))

    def test_replanning_returns_existing_plan(self):
        first = _create_plan()
        result, payload = _invoke_json(
            "backfill", "plan", "--target", "analytics.events", *WINDOW, "--chunk-hours", "24"
        )
        assert result.exit_code == 0
        assert payload["existed"] is True
        assert payload["plan"]["plan_id"] == first["plan_id"]

    def test_set_override_changes_chunking(self):
        result, payload = _invoke_json(
            "--set", "defaults.chunk_hours=12", "backfill", "plan", "--target", "analytics.events", *WINDOW
        )
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert len(payload["plan"]["chunks"]) == 4

    def test_plan_binds_configured_environment(self, clickhouse):
        plan = _create_plan()
        assert plan["environment"] == {"origin": "http://clickhouse:8123", "database": "analytics"}

    def test_offline_plan_is_unbound(self):
        assert _create_plan()["environment"] is None

    def test_sql_file(self, tmp_path):
        template = tmp_path / "backfill.sql"
        template.write_text(
            "INSERT INTO {{ target }} SELECT * FROM analytics.events_raw "
            "WHERE {{ time_column }} >= '{{ start }}' AND {{ time_column }} < '{{ end }}' "
            "SETTINGS insert_deduplication_token = '{{ idempotency_token }}'"
        )
        plan = _create_plan("--sql-file", str(template))
        assert plan["chunks"][0]["sql_template"].startswith("INSERT INTO analytics.events SELECT")

    @pytest.mark.parametrize(
        ("args", "message"),
        [
            (["--target", "events", *WINDOW], "Invalid --target"),
            (
                ["--target", "analytics.events", "--from", "2024-01-03T00:00:00Z", "--to", "2024-01-01T00:00:00Z"],
                "Expected --to to be after --from",
            ),
            (["--target", "analytics.events", "--from", "yesterday", "--to", "2024-01-01T00:00:00Z"], "--from"),
            (["--target", "analytics.events", *WINDOW, "--time-column", "ts; DROP"], "Invalid time column"),
        ],
    )
    def test_refused_plans_exit_2(self, args, message):
        result, payload = _invoke_json("backfill", "plan", *args)
        assert result.exit_code == 2
        assert payload["ok"] is False
        assert payload["error_type"] == "BackfillConfigError"
        assert message in payload["error"]

    def test_template_and_file_are_exclusive(self, tmp_path):
        template = tmp_path / "t.sql"
        template.write_text("SELECT 1")
        result, payload = _invoke_json(
            "backfill",
            "plan",
            "--target",
            "analytics.events",
            *WINDOW,
            "--sql-template",
            "SELECT 1",
            "--sql-file",
            str(template),
        )
        assert result.exit_code == 2
        assert "not both" in payload["error"]

    def test_large_window_requires_force(self):
        args = ["--set", "limits.max_window_hours=24", "backfill", "plan", "--target", "analytics.events", *WINDOW]
        result, payload = _invoke_json(*args)
        assert result.exit_code == 2
        assert "--force-large-window" in payload["error"]

        result, payload = _invoke_json(*args, "--force-large-window")
        assert result.exit_code == 0
        assert payload["plan"]["forced_large_window"] is True

    def test_human_output(self):
        result = runner.invoke(
            app, ["backfill", "plan", "--target", "analytics.events", *WINDOW, "--chunk-hours", "24"]
        )
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert "Backfill Plan" in result.output
        assert "analytics.events" in result.output


# ---------------------------------------------------------------------------
# run / resume
# ---------------------------------------------------------------------------


class TestRunCommand:
    def test_run_executes_every_chunk(self, clickhouse):
        plan = _create_plan()
        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"])

        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert payload["ok"] is True
        assert payload["noop"] is False
        assert payload["status"]["status"] == "completed"
        assert payload["status"]["totals"]["done"] == 2
        assert payload["status"]["rows_written"] == 10
        assert clickhouse.statements == [c["sql_template"] for c in plan["chunks"]]
        assert clickhouse.closed is True

    def test_completed_run_is_noop(self, clickhouse):
        plan = _create_plan()
        runner.invoke(app, ["backfill", "run", "--plan-id", plan["plan_id"]])
        clickhouse.statements.clear()

        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"])
        assert result.exit_code == 0
        assert payload["noop"] is True
        assert clickhouse.statements == []

    def test_offline_run_needs_endpoint(self):
        plan = _create_plan()
        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"])
        assert result.exit_code == 2
        assert "CHKIT_CLICKHOUSE_URL" in payload["error"]

    def test_offline_simulated_run(self):
        plan = _create_plan()
        result, payload = _invoke_json(
            "backfill", "run", "--plan-id", plan["plan_id"], "--simulate-fail-chunk", "1", "--simulate-fail-count", "2"
        )
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        chunks = payload["run"]["chunks"]
        assert chunks[0]["status"] == "done"
        assert chunks[0]["attempts"] == 3
        assert payload["status"]["totals"] == {
            "total": 2,
            "pending": 0,
            "running": 0,
            "done": 2,
            "failed": 0,
            "skipped": 0,
        }

    def test_failed_run_exits_1_then_recovers(self, clickhouse):
        plan = _create_plan()
        first = plan["chunks"][0]["id"]
        result, payload = _invoke_json(
            "backfill", "run", "--plan-id", plan["plan_id"], "--simulate-fail-chunk", first, "--simulate-fail-count", "3"
        )
        assert result.exit_code == 1
        assert payload["ok"] is False
        assert payload["status"]["status"] == "failed"
        assert payload["status"]["totals"]["failed"] == 1

        result, payload = _invoke_json("backfill", "resume", "--plan-id", plan["plan_id"], "--replay-failed")
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert payload["command"] == "backfill resume"
        assert payload["status"]["status"] == "completed"
        assert clickhouse.statements.count(plan["chunks"][1]["sql_template"]) == 1

    def test_skip_failed(self, clickhouse):
        plan = _create_plan()
        runner.invoke(
            app,
            ["backfill", "run", "--plan-id", plan["plan_id"], "--simulate-fail-chunk", "1", "--simulate-fail-count", "5"],
        )
        result, payload = _invoke_json("backfill", "resume", "--plan-id", plan["plan_id"], "--skip-failed")
        assert result.exit_code == 0
        assert payload["status"]["totals"]["skipped"] == 1

    def test_replay_flags_are_exclusive(self, clickhouse):
        plan = _create_plan()
        result, payload = _invoke_json(
            "backfill", "run", "--plan-id", plan["plan_id"], "--replay-failed", "--skip-failed"
        )
        assert result.exit_code == 2
        assert "mutually exclusive" in payload["error"]

    def test_dry_run_changes_nothing(self, clickhouse):
        plan = _create_plan()
        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"], "--dry-run")
        assert result.exit_code == 0
        assert payload["dry_run"] is True
        assert [c["chunk_id"] for c in payload["preview"]["chunks"]] == [c["id"] for c in plan["chunks"]]
        assert clickhouse.statements == []

        _, status = _invoke_json("backfill", "status", "--plan-id", plan["plan_id"])
        assert status["status"]["status"] == "planned"

    def test_resume_without_run(self, clickhouse):
        plan = _create_plan()
        result, payload = _invoke_json("backfill", "resume", "--plan-id", plan["plan_id"])
        assert result.exit_code == 2
        assert "Start with backfill run" in payload["error"]

    def test_environment_mismatch(self, clickhouse, monkeypatch):
        plan = _create_plan()
        monkeypatch.setenv("CHKIT_CLICKHOUSE_DATABASE", "staging")

        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"])
        assert result.exit_code == 2
        assert payload["error_type"] == "BackfillEnvironmentError"
        assert clickhouse.statements == []

        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"], "--force-environment")
        assert result.exit_code == 0
        assert payload["run"]["overrides"][0]["flag"] == "--force-environment"

    @pytest.mark.parametrize(
        ("plan_id", "message"),
        [("not-a-plan", "Invalid --plan-id"), ("0123456789abcdef", "not found")],
    )
    def test_bad_plan_ids(self, plan_id, message):
        result, payload = _invoke_json("backfill", "run", "--plan-id", plan_id)
        assert result.exit_code == 2
        assert message in payload["error"]

    @pytest.mark.parametrize("command", ["run", "resume"])
    def test_unknown_plan_is_reported_before_missing_endpoint(self, command):
        result, payload = _invoke_json("backfill", command, "--plan-id", "0123456789abcdef")
        assert result.exit_code == 2
        assert "not found" in payload["error"]
        assert "endpoint" not in payload["error"]

    def test_simulated_chunk_out_of_range(self):
        plan = _create_plan()
        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"], "--simulate-fail-chunk", "3")
        assert result.exit_code == 2
        assert "out of range" in payload["error"]

    def test_digit_only_chunk_id_is_matched_before_position(self):
        plan = BackfillPlanState.model_validate(_create_plan())
        plan.chunks[1].id = "1000000000000002"
        plugin = SimpleNamespace(store=SimpleNamespace(load_plan=lambda _plan_id: plan))

        assert _resolve_simulated_chunk(plugin, plan.plan_id, "1000000000000002") == "1000000000000002"
        assert _resolve_simulated_chunk(plugin, plan.plan_id, "1") == plan.chunks[0].id

    def test_human_output(self, clickhouse):
        plan = _create_plan()
        result = runner.invoke(app, ["backfill", "run", "--plan-id", plan["plan_id"]])
        assert result.exit_code == 0, f"Output: {result.output}\n{result.exception}"
        assert "Chunks" in result.output
        assert "completed" in result.output

    def test_human_error(self):
        result = runner.invoke(app, ["backfill", "run", "--plan-id", "nope"])
        assert result.exit_code == 2
        assert "backfill run failed" in result.output


# ---------------------------------------------------------------------------
# status / cancel / doctor
# ---------------------------------------------------------------------------


class TestInspectionCommands:
    def test_status_of_new_plan(self):
        plan = _create_plan()
        result, payload = _invoke_json("backfill", "status", "--plan-id", plan["plan_id"])
        assert result.exit_code == 0
        assert payload["status"]["status"] == "planned"
        assert payload["status"]["totals"]["pending"] == 2

    def test_cancel_without_run(self):
        plan = _create_plan()
        result, payload = _invoke_json("backfill", "cancel", "--plan-id", plan["plan_id"])
        assert result.exit_code == 2
        assert "Start with backfill run" in payload["error"]

    def test_cancel_then_reenter(self, clickhouse):
        plan = _create_plan()
        runner.invoke(
            app,
            ["backfill", "run", "--plan-id", plan["plan_id"], "--simulate-fail-chunk", "1", "--simulate-fail-count", "3"],
        )

        result, payload = _invoke_json("backfill", "cancel", "--plan-id", plan["plan_id"])
        assert result.exit_code == 0
        assert payload["deferred"] is False
        assert payload["status"]["status"] == "cancelled"

        result, payload = _invoke_json("backfill", "run", "--plan-id", plan["plan_id"])
        assert result.exit_code == 2
        assert "cancelled" in payload["error"]

        result, payload = _invoke_json("backfill", "resume", "--plan-id", plan["plan_id"], "--replay-failed")
        assert result.exit_code == 0
        assert payload["status"]["status"] == "completed"

    def test_cancel_completed_run(self, clickhouse):
        plan = _create_plan()
        runner.invoke(app, ["backfill", "run", "--plan-id", plan["plan_id"]])
        result, payload = _invoke_json("backfill", "cancel", "--plan-id", plan["plan_id"])
        assert result.exit_code == 2
        assert "already completed" in payload["error"]

    def test_doctor_reports_exhausted_chunk(self, clickhouse):
        plan = _create_plan()
        runner.invoke(
            app,
            ["backfill", "run", "--plan-id", plan["plan_id"], "--simulate-fail-chunk", "1", "--simulate-fail-count", "3"],
        )
        result, payload = _invoke_json("backfill", "doctor", "--plan-id", plan["plan_id"])
        assert result.exit_code == 0
        assert payload["healthy"] is False
        assert "backfill_chunk_failed_retry_exhausted" in payload["report"]["issue_codes"]
        assert any("--replay-failed" in r for r in payload["report"]["recommendations"])

    def test_doctor_healthy(self, clickhouse):
        plan = _create_plan()
        runner.invoke(app, ["backfill", "run", "--plan-id", plan["plan_id"]])
        result, payload = _invoke_json("backfill", "doctor", "--plan-id", plan["plan_id"])
        assert payload["healthy"] is True
        assert payload["report"]["recommendations"] == ["No remediation required."]

    def test_human_status_and_doctor(self):
        plan = _create_plan()
        status = runner.invoke(app, ["backfill", "status", "--plan-id", plan["plan_id"]])
        assert status.exit_code == 0
        assert "Backfill Status" in status.output

        doctor = runner.invoke(app, ["backfill", "doctor", "--plan-id", plan["plan_id"]])
        assert doctor.exit_code == 0
        assert "Recommendations" in doctor.output
