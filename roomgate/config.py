from __future__ import annotations

import json
import os
from typing import Any, Dict, List, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

DAY_SECONDS = 24 * 60 * 60


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_list(value: Any) -> Any:
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            return json.loads(stripped)
        return [part.strip() for part in stripped.split(",") if part.strip()]
    return value


class Settings(BaseModel):
    """Runtime settings for the admission service."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(False, "TEST_MODE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    store_timeout_seconds: float = env_field(2.0, "STORE_TIMEOUT_SECONDS")

    token_ttl_seconds: int = env_field(90 * DAY_SECONDS, "TOKEN_TTL_SECONDS")
    token_grace_seconds: int = env_field(30 * DAY_SECONDS, "TOKEN_GRACE_SECONDS")
    presence_ttl_seconds: int = env_field(DAY_SECONDS, "PRESENCE_TTL_SECONDS")
    block_seconds: int = env_field(DAY_SECONDS, "BLOCK_SECONDS")

    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")

    # Per-action fixed windows: (window seconds, limit)
    register_rate_window_seconds: int = env_field(60, "REGISTER_RATE_WINDOW_SECONDS")
    register_rate_limit: int = env_field(5, "REGISTER_RATE_LIMIT")
    token_rate_window_seconds: int = env_field(60, "TOKEN_RATE_WINDOW_SECONDS")
    token_rate_limit: int = env_field(10, "TOKEN_RATE_LIMIT")
    password_auth_rate_window_seconds: int = env_field(
        60, "PASSWORD_AUTH_RATE_WINDOW_SECONDS"
    )
    password_auth_rate_limit: int = env_field(10, "PASSWORD_AUTH_RATE_LIMIT")
    reply_rate_window_seconds: int = env_field(5 * 60 * 60, "REPLY_RATE_WINDOW_SECONDS")
    reply_rate_limit: int = env_field(15, "REPLY_RATE_LIMIT")
    anonymous_reply_rate_window_seconds: int = env_field(
        DAY_SECONDS, "ANONYMOUS_REPLY_RATE_WINDOW_SECONDS"
    )
    anonymous_reply_rate_limit: int = env_field(3, "ANONYMOUS_REPLY_RATE_LIMIT")
    rate_limit_overrides: Dict[str, Dict[str, int]] = env_field(
        {}, "RATE_LIMIT_OVERRIDES"
    )
    rate_limit_headers_enabled: bool = env_field(True, "RATE_LIMIT_HEADERS_ENABLED")

    presence_reconcile_enabled: bool = env_field(True, "PRESENCE_RECONCILE_ENABLED")
    presence_reconcile_interval_seconds: int = env_field(
        300, "PRESENCE_RECONCILE_INTERVAL_SECONDS"
    )

    admin_usernames: List[str] = env_field([], "ADMIN_USERNAMES")
    blocked_username_terms: List[str] = env_field([], "BLOCKED_USERNAME_TERMS")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator(
        "token_ttl_seconds",
        "token_grace_seconds",
        "presence_ttl_seconds",
        "block_seconds",
        "presence_reconcile_interval_seconds",
    )
    @classmethod
    def _positive_seconds(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("durations must be positive")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("store timeout must be positive")
        return value

    @field_validator("admin_usernames", "blocked_username_terms", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_list(cls, value: Any) -> Any:
        return _split_list(value)

    @field_validator("admin_usernames", "blocked_username_terms")
    @classmethod
    def _lowercase_entries(cls, value: List[str]) -> List[str]:
        return [entry.strip().lower() for entry in value if entry.strip()]

    @field_validator("rate_limit_overrides", mode="before")
    @classmethod
    def _parse_overrides(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value.strip() else {}
        return value

    def rate_limit(self, action: str, default: Tuple[int, int]) -> Tuple[int, int]:
        """Return ``(window_seconds, limit)`` for an action, honoring overrides."""
        override = self.rate_limit_overrides.get(action)
        if not override:
            return default
        return (
            int(override.get("window_seconds", default[0])),
            int(override.get("limit", default[1])),
        )


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
