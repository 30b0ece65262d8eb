# Core Module - Runtime Configuration
#
# Settings come from environment variables (TRACR_*) through
# pydantic-settings. A `.env` file in the working directory is read as
# well, so local development does not need exported variables.
#
# The session secret signs dashboard tokens and derives the key that
# wraps stored device tokens. Rotating it invalidates every session and
# forces a device-token rotation on the next re-registration.

import logging
import secrets
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Resolved server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TRACR_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )

    database_path: str = "data/tracr.db"
    secret_key: str = Field(default="", validate_default=True)
    token_ttl_hours: int = Field(default=24, ge=1)
    online_threshold_minutes: int = Field(default=10, ge=1)
    command_ttl_minutes: int = Field(default=5, ge=1)
    sweep_interval_seconds: int = Field(default=60, ge=1)
    agent_request_timeout: float = Field(default=10.0, gt=0)
    rate_limit_enabled: bool = True
    agent_rate_limit: int = Field(default=100, ge=1)
    web_rate_limit: int = Field(default=1000, ge=1)
    register_rate_limit: int = Field(default=10, ge=1)
    login_rate_limit: int = Field(default=100, ge=1)
    max_payload_size: int = Field(default=10 * 1024 * 1024, ge=1024)
    # Comma-separated in the environment.
    cors_origins: Annotated[List[str], NoDecode] = ["http://localhost:3000"]
    log_level: str = "INFO"
    admin_username: str = "admin"
    admin_password: Optional[str] = None
    password_hash_iterations: int = Field(default=600_000, ge=1000)
    host: str = "0.0.0.0"
    port: int = Field(default=8443, ge=1, le=65535)

    @field_validator("secret_key")
    @classmethod
    def _check_secret(cls, v: str) -> str:
        if not v:
            logger.warning(
                "TRACR_SECRET_KEY not set; using an ephemeral key "
                "(sessions and stored device tokens will not survive a restart)"
            )
            return secrets.token_urlsafe(48)
        if len(v) < MIN_SECRET_LENGTH:
            raise ValueError(
                f"TRACR_SECRET_KEY must be at least {MIN_SECRET_LENGTH} characters"
            )
        return v

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, v):
        if isinstance(v, str):
            return [o.strip() for o in v.split(",") if o.strip()]
        return v

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper()

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "Settings":
        """Build settings from the process environment and an env file."""
        return cls(_env_file=env_file or ".env")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or load the Settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def set_settings(settings: Optional[Settings]):
    """Allow DI for testing."""
    global _settings
    _settings = settings
