"""Configuration sourced from environment variables and an optional .env file."""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import LockRetryConfig, OrchestratorConfig

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class AgentSettings(BaseSettings):
    """Runtime knobs, each readable from a ``PDA_*`` variable."""

    model_config = SettingsConfigDict(
        env_prefix="PDA_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    storage_root: Path = Field(default=Path("~/.parallel-dev-agent"))
    git_timeout_seconds: float = 30.0
    main_branch: str = "main"
    session_branch_prefix: str = "sessions/s-"
    output_poll_interval_seconds: float = 0.1
    output_retention_seconds: float = 3600.0
    restart_settle_seconds: float = 1.0
    lock_retry_attempts: int = 3
    lock_retry_base_delay_seconds: float = 0.1
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in _LOG_LEVELS:
            raise ValueError("PDA_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG")
        return normalized

    @field_validator("git_timeout_seconds", "output_poll_interval_seconds")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    def to_config(self) -> OrchestratorConfig:
        return OrchestratorConfig(
            storage_root=self.storage_root.expanduser().resolve(),
            git_timeout_seconds=self.git_timeout_seconds,
            main_branch=self.main_branch,
            session_branch_prefix=self.session_branch_prefix,
            output_poll_interval_seconds=self.output_poll_interval_seconds,
            output_retention_seconds=self.output_retention_seconds,
            restart_settle_seconds=self.restart_settle_seconds,
            index_lock_retry=LockRetryConfig(
                max_attempts=self.lock_retry_attempts,
                base_delay_seconds=self.lock_retry_base_delay_seconds,
            ),
            log_level=self.log_level,
        )


@lru_cache(maxsize=1)
def get_settings() -> AgentSettings:
    """Return cached settings instance."""
    return AgentSettings()


__all__ = ["AgentSettings", "get_settings"]
