from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Environment(str, Enum):
    """Deployment environments; cookies are only marked secure in production."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/dancestudio", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional; only used to lease the periodic cleanup job across instances",
    )
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for the memory store snapshot; unset keeps state in memory only",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets between tests.",
    )
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    session_ttl_minutes: int = env_field(
        24 * 60, "SESSION_TTL_MINUTES", description="Lifetime of a new session", gt=0
    )
    session_retention_days: int = env_field(
        30,
        "SESSION_RETENTION_DAYS",
        description="Inactive sessions older than this are purged by cleanup",
        gt=0,
    )
    session_cleanup_enabled: bool = env_field(True, "SESSION_CLEANUP_ENABLED")
    session_cleanup_interval_seconds: int = env_field(
        60 * 60, "SESSION_CLEANUP_INTERVAL_SECONDS", gt=0
    )
    session_cleanup_token: str | None = env_field(
        None,
        "SESSION_CLEANUP_TOKEN",
        description="When set, POST /auth/sessions/cleanup requires a matching X-Cleanup-Token header",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def cookie_secure(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("redis_url", "shared_fs_root", "session_cleanup_token", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
