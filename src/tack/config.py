"""Configuration management for tack."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from tack.dispatcher import DispatchPolicy
from tack.errors import InvalidModelFormatError, ModelNotConfiguredError
from tack.orchestrator import OrchestratorLimits


class Settings(BaseSettings):
    """Application settings, read from ``TACK_*`` variables and ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="TACK_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        protected_namespaces=(),
    )

    # Model
    model: str | None = Field(default=None, description="Model as provider:name, e.g. openai:gpt-4o-mini")
    api_key: str | None = Field(default=None, description="API key for the model provider")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    max_tokens: int = Field(default=2048, gt=0)
    model_timeout_seconds: float = Field(default=120.0, gt=0)

    # Budget
    max_model_calls: int = Field(default=12, ge=1)
    max_retries: int = Field(default=3, ge=0)

    # Execution
    command_timeout_seconds: float = Field(default=30.0, gt=0)
    max_output_chars: int = Field(default=50_000, gt=0)
    dispatch_policy: DispatchPolicy = DispatchPolicy.SEQUENTIAL
    continue_batch_on_error: bool = True
    strict_arguments: bool = True

    # Approval
    auto_approve: bool = False
    approval_timeout_seconds: float | None = Field(default=None, gt=0)
    policy_file: Path | None = None

    # Files
    capabilities_file: Path | None = None
    transcript_path: Path | None = None
    workspace: Path = Field(default_factory=Path.cwd)

    log_level: Literal["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    def require_model(self) -> str:
        """Return the configured model, checking the provider:name shape."""

        if not self.model:
            raise ModelNotConfiguredError("no model configured, set TACK_MODEL")
        provider, separator, name = self.model.partition(":")
        if not separator or not provider.strip() or not name.strip():
            raise InvalidModelFormatError(f"model must look like provider:name, got {self.model!r}")
        return self.model

    def limits(self) -> OrchestratorLimits:
        return OrchestratorLimits(
            max_model_calls=self.max_model_calls,
            max_retries=self.max_retries,
            model_timeout_seconds=self.model_timeout_seconds,
            continue_batch_on_error=self.continue_batch_on_error,
        )
