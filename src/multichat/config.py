"""Client configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

ReasoningEffort = Literal["unset", "minimal", "low", "medium", "high"]


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:3001/v1"),
        validation_alias=AliasChoices("MULTICHAT_API_BASE", "api_base_url"),
    )
    api_token: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("MULTICHAT_API_TOKEN", "api_token"),
    )
    default_model: str = Field(
        default="openai::gpt-4o-mini",
        validation_alias=AliasChoices("MULTICHAT_DEFAULT_MODEL", "default_model"),
    )
    default_provider_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "MULTICHAT_DEFAULT_PROVIDER", "default_provider_id"
        ),
    )
    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("MULTICHAT_TIMEOUT", "timeout"),
        ge=1,
    )
    stream_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("MULTICHAT_STREAM", "stream_enabled"),
    )
    tools_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("MULTICHAT_TOOLS_ENABLED", "tools_enabled"),
    )
    enabled_tools: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("MULTICHAT_TOOLS", "enabled_tools"),
    )
    reasoning_effort: ReasoningEffort = Field(
        default="unset",
        validation_alias=AliasChoices(
            "MULTICHAT_REASONING_EFFORT", "reasoning_effort"
        ),
    )
    system_prompt: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MULTICHAT_SYSTEM_PROMPT", "system_prompt"),
    )
    active_system_prompt_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "MULTICHAT_SYSTEM_PROMPT_ID", "active_system_prompt_id"
        ),
    )

    # Minimum spacing between listener notifications while tokens stream in.
    ui_flush_interval: float = Field(
        default=0.05,
        ge=0,
        validation_alias=AliasChoices(
            "MULTICHAT_UI_FLUSH_INTERVAL", "ui_flush_interval"
        ),
    )
    title_refresh_delay: float = Field(
        default=3.0,
        ge=0,
        validation_alias=AliasChoices(
            "MULTICHAT_TITLE_REFRESH_DELAY", "title_refresh_delay"
        ),
    )

    logging_settings_path: Path = Field(
        default_factory=lambda: Path("logging_settings.conf"),
        validation_alias=AliasChoices(
            "MULTICHAT_LOGGING_SETTINGS", "logging_settings_path"
        ),
    )
    log_dir: Path = Field(
        default_factory=lambda: Path("logs/app"),
        validation_alias=AliasChoices("MULTICHAT_LOG_DIR", "log_dir"),
    )
    turn_log_dir: Path = Field(
        default_factory=lambda: Path("logs/turns"),
        validation_alias=AliasChoices("MULTICHAT_TURN_LOG_DIR", "turn_log_dir"),
    )

    @property
    def base_url(self) -> str:
        """Return the API base URL without a trailing slash."""

        return str(self.api_base_url).rstrip("/")

    def resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (PROJECT_ROOT / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["PROJECT_ROOT", "ReasoningEffort", "Settings", "get_settings"]
