"""
Configuration management for MigrationHub.

This module provides environment-based configuration using Pydantic BaseSettings.
Connection strings, batch sizing per volume class, concurrency, conflict
strategy, retry policy and validation thresholds are all tuning knobs read
from the environment (``MH_`` prefix) or an optional ``.env`` file.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Dict, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Repository root; relative paths in MH_ENV_FILE resolve against it
PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _env_file() -> Path:
    override = os.getenv("MH_ENV_FILE")
    if not override:
        return PROJECT_ROOT / ".env"
    path = Path(override).expanduser()
    return path if path.is_absolute() else PROJECT_ROOT / path


SETTINGS_ENV_FILE = _env_file()


def _normalize_uri(uri: Optional[str]) -> Optional[str]:
    # postgres:// is rejected by SQLAlchemy 1.4+
    if uri and uri.startswith("postgres://"):
        return uri.replace("postgres://", "postgresql://", 1)
    return uri


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Environment variables are loaded with the MH_ prefix, e.g.
    MH_MAX_WORKERS=8 overrides ``max_workers``. The LOG_* fields are read
    without prefix so that the logging bootstrap and the rest of the tooling agree.
    """

    LOG_LEVEL: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Logging level (uppercase)",
    )
    LOG_TO_FILE: bool = Field(
        default=False,
        validation_alias="LOG_TO_FILE",
        description="Also write JSON logs to a daily rotating file",
    )
    LOG_FILE_DIR: str = Field(default="logs", validation_alias="LOG_FILE_DIR")

    # Stores
    source_database_uri: str = Field(
        default="sqlite:///legacy_source.db",
        description="Read-only legacy store DSN",
    )
    target_database_uri: str = Field(
        default="sqlite:///migration_target.db",
        description="Normalized target store DSN (also hosts control tables)",
    )
    entities_config: str = Field(
        default="config/entities.yml",
        description="Path to entity definition YAML",
    )

    # Batch sizing per volume class
    batch_size_small: int = Field(default=10000, ge=1)
    batch_size_medium: int = Field(default=1000, ge=1)
    batch_size_large: int = Field(default=2000, ge=1)
    batch_size_massive: int = Field(default=5000, ge=1)

    # Execution
    max_workers: int = Field(
        default=4, ge=1, description="Concurrent entities within one level"
    )
    conflict_strategy: Literal["source_wins", "target_wins", "manual"] = Field(
        default="source_wins",
        description="Default conflict resolution strategy",
    )
    conflict_strategy_overrides: Dict[str, str] = Field(
        default_factory=dict,
        description="Explicit per-entity strategy overrides",
    )
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_backoff_ms: int = Field(default=500, ge=0)
    operation_timeout_seconds: int = Field(default=60, ge=1)
    massive_threshold: int = Field(
        default=100_000,
        description="Mapped-row count above which the compact membership index is used",
    )
    dry_run: bool = Field(default=False)

    # Validation
    count_parity_tolerance: float = Field(default=0.0, ge=0.0, le=1.0)
    referential_sample_limit: int = Field(default=50, ge=1)
    sample_size: int = Field(default=500, ge=1)
    sample_confidence: float = Field(default=0.95, gt=0.0, lt=1.0)
    sample_max_mismatch_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    sample_seed: int = Field(default=1337)

    # Scheduling
    schedule_enabled: bool = Field(default=True)
    schedule_cron: str = Field(default="0 2 * * *")

    @field_validator("conflict_strategy_overrides")
    @classmethod
    def validate_overrides(cls, v: Dict[str, str]) -> Dict[str, str]:
        allowed = {"source_wins", "target_wins", "manual"}
        bad = {k: s for k, s in v.items() if s not in allowed}
        if bad:
            raise ValueError(
                f"Unknown conflict strategies {bad}; expected one of {sorted(allowed)}"
            )
        return v

    @model_validator(mode="after")
    def normalize_database_uris(self) -> "Settings":
        self.source_database_uri = _normalize_uri(self.source_database_uri)
        self.target_database_uri = _normalize_uri(self.target_database_uri)
        return self

    def batch_size_for(self, volume_class: str) -> int:
        """Return the configured batch size for a volume class name."""
        return int(getattr(self, f"batch_size_{volume_class}"))

    model_config = SettingsConfigDict(
        env_prefix="MH_",
        env_file=str(SETTINGS_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings instance with loaded configuration
    """
    return Settings()
