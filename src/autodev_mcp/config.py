"""Configuration management for Autodev MCP."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AutodevSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    repo_root: Path = Field(default=Path("."), validation_alias="AUTODEV_REPO_ROOT")
    state_dir: Path = Field(default=Path(".claude"), validation_alias="AUTODEV_STATE_DIR")
    git_path: str | None = Field(default=None, validation_alias="AUTODEV_GIT_PATH")
    pool_size: int = Field(default=8, validation_alias="AUTODEV_POOL_SIZE")
    branch_prefix: str = Field(default="auto/", validation_alias="AUTODEV_BRANCH_PREFIX")
    token_budget: int = Field(default=200_000, validation_alias="AUTODEV_TOKEN_BUDGET")
    warning_threshold: float = Field(default=0.80, validation_alias="AUTODEV_WARNING_THRESHOLD")
    checkpoint_threshold: float = Field(
        default=0.95, validation_alias="AUTODEV_CHECKPOINT_THRESHOLD"
    )
    skill_table_path: Path | None = Field(default=None, validation_alias="AUTODEV_SKILL_TABLE")
    lock_timeout: float = Field(default=10.0, validation_alias="AUTODEV_LOCK_TIMEOUT")
    log_level: str = Field(default="INFO", validation_alias="AUTODEV_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "AUTODEV_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("pool_size", "token_budget")
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("AUTODEV_POOL_SIZE and AUTODEV_TOKEN_BUDGET must be >= 1")
        return value

    @field_validator("branch_prefix")
    @classmethod
    def _normalize_branch_prefix(cls, value: str) -> str:
        normalized = value.strip().strip("/")
        if not normalized:
            raise ValueError("AUTODEV_BRANCH_PREFIX must not be empty")
        return normalized + "/"

    @field_validator("lock_timeout")
    @classmethod
    def _validate_lock_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("AUTODEV_LOCK_TIMEOUT must be > 0")
        return value

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "AutodevSettings":
        if not 0 < self.warning_threshold < self.checkpoint_threshold <= 1:
            raise ValueError(
                "Thresholds must satisfy 0 < AUTODEV_WARNING_THRESHOLD < "
                "AUTODEV_CHECKPOINT_THRESHOLD <= 1"
            )
        return self

    @property
    def resolved_state_dir(self) -> Path:
        if self.state_dir.is_absolute():
            return self.state_dir
        return self.repo_root / self.state_dir

    @property
    def pool_dir(self) -> Path:
        return self.resolved_state_dir / "worktree-pool"

    @property
    def pool_state_file(self) -> Path:
        return self.resolved_state_dir / "pool-state.json"

    @property
    def workflow_file(self) -> Path:
        return self.resolved_state_dir / "auto-state-machine.yaml"

    @property
    def memory_dir(self) -> Path:
        return self.resolved_state_dir / "auto-memory"

    @property
    def progress_file(self) -> Path:
        return self.resolved_state_dir / "auto-progress.yaml"

    @property
    def plans_dir(self) -> Path:
        return self.resolved_state_dir / "plans"

    @property
    def project_profile(self) -> Path:
        return self.resolved_state_dir / "project-profile.yaml"


@lru_cache(maxsize=1)
def get_settings() -> AutodevSettings:
    """Return cached settings instance."""

    settings = AutodevSettings()
    settings.repo_root = settings.repo_root.expanduser().resolve()
    settings.state_dir = settings.state_dir.expanduser()
    if settings.skill_table_path is not None:
        settings.skill_table_path = settings.skill_table_path.expanduser().resolve()
    return settings


__all__ = ["AutodevSettings", "get_settings"]
