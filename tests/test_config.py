"""Tests for environment-driven settings."""
import pytest
from pydantic import ValidationError

from roomgate.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.token_ttl_seconds == 90 * 86400
        assert settings.token_grace_seconds == 30 * 86400
        assert settings.presence_ttl_seconds == 86400
        assert settings.block_seconds == 86400
        assert settings.store_timeout_seconds == 2.0
        assert (settings.register_rate_window_seconds, settings.register_rate_limit) == (60, 5)
        assert (settings.reply_rate_window_seconds, settings.reply_rate_limit) == (18000, 15)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("TOKEN_TTL_SECONDS", "3600")
        monkeypatch.setenv("ADMIN_USERNAMES", "Root, ops")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", '["https://example.com"]')
        monkeypatch.setenv("RATE_LIMIT_OVERRIDES", '{"createUser": {"limit": 2}}')

        settings = Settings.from_env()

        assert settings.token_ttl_seconds == 3600
        assert settings.admin_usernames == ["root", "ops"]
        assert settings.cors_allow_origins == ["https://example.com"]
        assert settings.rate_limit("createUser", (60, 5)) == (60, 2)
        assert settings.rate_limit("generateToken", (60, 10)) == (60, 10)

    @pytest.mark.parametrize(
        "field", ["token_ttl_seconds", "token_grace_seconds", "presence_ttl_seconds", "block_seconds"]
    )
    def test_durations_must_be_positive(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_store_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(store_timeout_seconds=0)

    def test_empty_list_env(self, monkeypatch):
        monkeypatch.setenv("BLOCKED_USERNAME_TERMS", "")
        assert Settings.from_env().blocked_username_terms == []

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("BLOCK_SECONDS", "60")
        reset_settings_cache()
        assert get_settings().block_seconds == 60
        monkeypatch.delenv("BLOCK_SECONDS")
        reset_settings_cache()
