"""Backfill engine configuration loaded from environment variables."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from backfill_engine.errors import BackfillConfigError
from backfill_engine.models.plan import EnvironmentFingerprint
from backfill_engine.options import BackfillPluginOptions, validate_base_options

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables with CHKIT_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="CHKIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    debug: bool = False
    structured_logging: bool = False

    # Migration metadata
    meta_dir: Path = Path("./chkit/meta")

    # ClickHouse
    clickhouse_url: str | None = None
    clickhouse_database: str = "default"
    clickhouse_user: str | None = None
    clickhouse_password: SecretStr | None = None
    query_timeout_seconds: float = Field(default=300.0, gt=0.0)

    # Lock TTL
    lock_ttl_seconds: int = Field(default=3600, gt=0)

    # Backfill plugin
    backfill: BackfillPluginOptions = Field(default_factory=BackfillPluginOptions)

    @field_validator("clickhouse_password", mode="before")
    @classmethod
    def mask_password_in_repr(cls, v: str | None) -> SecretStr | None:
        if v is None:
            return None
        if isinstance(v, SecretStr):
            return v
        return SecretStr(v)

    def is_clickhouse_configured(self) -> bool:
        return bool(self.clickhouse_url)

    def environment_fingerprint(self) -> EnvironmentFingerprint | None:
        """Return the fingerprint of the configured database, or None when offline."""
        if not self.clickhouse_url:
            return None
        try:
            return EnvironmentFingerprint.from_endpoint(self.clickhouse_url, self.clickhouse_database)
        except ValueError as exc:
            raise BackfillConfigError(str(exc)) from exc

    def backfill_state_dir(self) -> Path:
        if self.backfill.state_dir is not None:
            return self.backfill.state_dir
        return self.meta_dir / "backfill"


def load_settings(**overrides: object) -> Settings:
    """Load settings from environment, with optional overrides for testing."""
    try:
        settings = Settings(**overrides)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise BackfillConfigError(f"Invalid configuration: {exc}") from exc

    validate_base_options(settings.backfill)

    if settings.debug:
        logger.info("Loaded settings (state dir: %s)", settings.backfill_state_dir())

    return settings
