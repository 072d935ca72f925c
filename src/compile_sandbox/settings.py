"""Runtime configuration from environment variables."""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from compile_sandbox import constants
from compile_sandbox.config import SandboxConfig


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with COMPILE_SANDBOX_ prefix.
    Example: COMPILE_SANDBOX_MAX_CONCURRENT_JOBS=8
    """

    model_config = SettingsConfigDict(
        env_prefix="COMPILE_SANDBOX_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production"] = "development"

    # HTTP server
    host: str = constants.DEFAULT_HTTP_HOST
    port: int = Field(default=constants.DEFAULT_HTTP_PORT, ge=1, le=65535)
    cors_origins: list[str] = ["*"]

    # AI collaborator. No fallback key: unset means AI features are disabled.
    gemini_api_key: SecretStr | None = None
    gemini_model: str = constants.DEFAULT_GEMINI_MODEL

    # Pipeline overrides (None = SandboxConfig default)
    max_concurrent_jobs: int | None = None
    admission_mode: Literal["queue", "reject"] | None = None
    max_queue_length: int | None = None
    job_timeout_seconds: float | None = None
    compile_timeout_seconds: float | None = None
    run_timeout_seconds: float | None = None
    compiler: str | None = None
    workspace_root: Path | None = None
    isolate_network: bool | None = None

    @property
    def ai_enabled(self) -> bool:
        """Whether an API key for the AI collaborator is configured."""
        return self.gemini_api_key is not None and bool(self.gemini_api_key.get_secret_value())

    def sandbox_config(self) -> SandboxConfig:
        """Build a SandboxConfig from the pipeline overrides that are set."""
        overrides = {
            name: value
            for name in (
                "max_concurrent_jobs",
                "admission_mode",
                "max_queue_length",
                "job_timeout_seconds",
                "compile_timeout_seconds",
                "run_timeout_seconds",
                "compiler",
                "workspace_root",
                "isolate_network",
            )
            if (value := getattr(self, name)) is not None
        }
        return SandboxConfig(**overrides)
