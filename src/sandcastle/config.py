"""sandcastle configuration settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sandcastle.infrastructure.config.settings_utils import (
    env_bool,
    env_float,
    env_int,
    env_str,
)
from sandcastle.infrastructure.logging_setup import configure_logging


class Settings(BaseSettings):
    """Process-wide defaults with env var support.

    These only seed the values a ``SandboxConfig`` leaves out; every value
    still goes through sandbox config validation, so a bad env override
    surfaces as a ``ConfigError`` at resolve time.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Container runtime
    runtime_binary: str = Field(default_factory=lambda: env_str("SANDCASTLE_RUNTIME", "docker"))
    container_name_prefix: str = Field(
        default_factory=lambda: env_str("SANDCASTLE_CONTAINER_NAME_PREFIX", "sandcastle")
    )

    # Resource limits
    default_memory: str = Field(default_factory=lambda: env_str("SANDCASTLE_MEMORY", "512m"))
    default_cpus: float = Field(default_factory=lambda: env_float("SANDCASTLE_CPUS", 0.5))
    default_pids_limit: int = Field(
        default_factory=lambda: env_int("SANDCASTLE_PIDS_LIMIT", 50, minimum=1)
    )

    # Mount
    default_container_path: str = Field(
        default_factory=lambda: env_str("SANDCASTLE_CONTAINER_PATH", "/workspace")
    )

    # Timeouts (seconds)
    preflight_timeout_seconds: float = Field(
        default_factory=lambda: env_float("SANDCASTLE_PREFLIGHT_TIMEOUT", 10.0)
    )
    pull_timeout_seconds: float = Field(
        default_factory=lambda: env_float("SANDCASTLE_PULL_TIMEOUT", 300.0)
    )
    cleanup_timeout_seconds: float = Field(
        default_factory=lambda: env_float("SANDCASTLE_CLEANUP_TIMEOUT", 30.0, minimum=1.0)
    )

    # Observability
    log_level: str = Field(default_factory=lambda: env_str("SANDCASTLE_LOG_LEVEL", "INFO"))
    log_json: bool = Field(default_factory=lambda: env_bool("SANDCASTLE_LOG_JSON", False))

    def setup_logging(self) -> None:
        configure_logging(level=self.log_level, json_logs=self.log_json)


# Global settings instance
settings = Settings()
