"""
CaptureHub Configuration Module

Centralized configuration management using pydantic-settings.
Loads settings from environment variables and .env files.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Find the project root (where .env is located)
_PROJECT_ROOT = Path(__file__).parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE) if _ENV_FILE.exists() else ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Server Configuration
    # ==========================================================================
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")

    # ==========================================================================
    # Directory Server
    # ==========================================================================
    directory_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the central server listing registered agents",
    )
    registry_refresh_seconds: float = Field(
        default=10.0,
        description="Interval between agent roster refreshes (seconds)",
    )

    # ==========================================================================
    # Agent Communication
    # ==========================================================================
    status_poll_seconds: float = Field(
        default=3.0,
        description="Interval between status polls of a watched agent (seconds)",
    )
    watch_all_agents: bool = Field(
        default=True,
        description="API server polls the status of every registered agent",
    )
    request_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for a single agent or directory request (seconds)",
    )
    restart_release_timeout_seconds: float = Field(
        default=5.0,
        description="How long a filter restart waits for the agent to release the interface",
    )
    restart_poll_interval_seconds: float = Field(
        default=0.25,
        description="Status poll cadence while waiting for the interface release",
    )
    agent_unreachable_message: str = Field(
        default="Connection to agent failed",
        description="Message shown to the operator for any transport failure",
    )

    # ==========================================================================
    # Filter Presets
    # ==========================================================================
    presets_path: Path = Field(
        default=Path.home() / ".capturehub" / "presets.json",
        description="JSON file backing the saved filter presets",
    )

    # ==========================================================================
    # Logging Configuration
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
        description="Log output format",
    )

    @field_validator("presets_path", mode="before")
    @classmethod
    def ensure_path(cls, v: str | Path) -> Path:
        """Ensure presets_path is an expanded Path object."""
        return Path(v).expanduser() if isinstance(v, str) else v

    @field_validator("directory_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the directory URL so paths can be appended."""
        return v.rstrip("/")

    def ensure_presets_dir(self) -> Path:
        """Create the presets directory if it doesn't exist."""
        self.presets_path.parent.mkdir(parents=True, exist_ok=True)
        return self.presets_path.parent


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience alias
settings = get_settings()
