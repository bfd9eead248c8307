"""Unit tests for backfill_engine.config."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import SecretStr

from backfill_engine.config import Settings, load_settings
from backfill_engine.errors import BackfillConfigError

# ---------------------------------------------------------------------------
# Settings - default values
# ---------------------------------------------------------------------------


class TestSettingsDefaults:
    def test_default_state_dir(self):
        settings = Settings()
        assert settings.backfill_state_dir() == Path("./chkit/meta") / "backfill"

    def test_default_clickhouse_unconfigured(self):
        settings = Settings()
        assert settings.clickhouse_url is None
        assert settings.is_clickhouse_configured() is False
        assert settings.environment_fingerprint() is None

    def test_default_lock_ttl(self):
        assert Settings().lock_ttl_seconds == 3600


# ---------------------------------------------------------------------------
# Environment variables
# ---------------------------------------------------------------------------


class TestSettingsFromEnv:
    def test_prefix_and_nested_delimiter(self, monkeypatch):
        monkeypatch.setenv("CHKIT_CLICKHOUSE_URL", "http://ch.internal:8123")
        monkeypatch.setenv("CHKIT_CLICKHOUSE_DATABASE", "analytics")
        monkeypatch.setenv("CHKIT_BACKFILL__DEFAULTS__CHUNK_HOURS", "12")
        monkeypatch.setenv("CHKIT_BACKFILL__POLICY__BLOCK_OVERLAPPING_RUNS", "false")
        settings = load_settings()
        assert settings.backfill.defaults.chunk_hours == 12
        assert settings.backfill.policy.block_overlapping_runs is False
        fingerprint = settings.environment_fingerprint()
        assert fingerprint is not None
        assert fingerprint.describe() == "http://ch.internal:8123/analytics"

    def test_password_is_secret(self, monkeypatch):
        monkeypatch.setenv("CHKIT_CLICKHOUSE_PASSWORD", "hunter2")
        settings = load_settings()
        assert isinstance(settings.clickhouse_password, SecretStr)
        assert "hunter2" not in repr(settings)

    def test_explicit_state_dir_wins(self, tmp_path):
        settings = load_settings(backfill={"state_dir": str(tmp_path)})
        assert settings.backfill_state_dir() == tmp_path


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestLoadSettingsValidation:
    def test_invalid_value_is_config_error(self):
        with pytest.raises(BackfillConfigError, match="Invalid configuration"):
            load_settings(lock_ttl_seconds=0)

    def test_chunk_below_minimum_is_config_error(self):
        with pytest.raises(BackfillConfigError, match="min_chunk_minutes"):
            load_settings(backfill={"defaults": {"chunk_hours": 0.1}})

    def test_unfingerprintable_url_is_config_error(self):
        settings = load_settings(clickhouse_url="not-a-url")
        with pytest.raises(BackfillConfigError, match="fingerprint"):
            settings.environment_fingerprint()
