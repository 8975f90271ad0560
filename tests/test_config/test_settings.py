"""Tests for environment-driven client settings."""

import pytest
from pydantic import ValidationError

from carelink.config import ClientSettings, get_settings


class TestClientSettings:
    def test_defaults(self):
        settings = ClientSettings()
        assert settings.session_ttl_hours == 24
        assert settings.remember_me_ttl_days == 30
        assert settings.refresh_margin_minutes == 5
        assert (
            settings.reconnect_base_delay,
            settings.reconnect_max_delay,
            settings.reconnect_max_attempts,
        ) == (1.0, 5.0, 5)

    def test_reads_prefixed_environment(self, monkeypatch):
        monkeypatch.setenv("CARELINK_API_BASE_URL", "http://10.0.0.4:5000/api")
        monkeypatch.setenv("carelink_reconnect_max_attempts", "3")

        settings = ClientSettings()

        assert settings.api_base_url == "http://10.0.0.4:5000/api"
        assert settings.reconnect_max_attempts == 3

    @pytest.mark.parametrize(
        "overrides",
        [
            {"reconnect_base_delay": 0},
            {"reconnect_base_delay": 2.0, "reconnect_max_delay": 1.0},
            {"reconnect_max_attempts": 0},
        ],
    )
    def test_rejects_invalid_backoff(self, overrides):
        with pytest.raises(ValidationError):
            ClientSettings(**overrides)

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()
