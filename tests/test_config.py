"""Unit tests for settings loading."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from slicer_fleet.config import (
    DEFAULT_EXEC_IDLE_TIMEOUT_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_USER_AGENT,
    Settings,
    get_settings,
    parse_duration,
)


class TestParseDuration:
    """Tests for Go-style duration strings."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("30s", 30.0),
            ("1m30s", 90.0),
            ("250ms", 0.25),
            ("2h", 7200.0),
            ("45", 45.0),
            (12, 12.0),
            (" 10s ", 10.0),
        ],
    )
    def test_valid_durations(self, value, expected):
        """Test accepted duration forms."""
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "soon", "10x", "s10", "0s", "-5", 0])
    def test_invalid_durations(self, value):
        """Test malformed or non-positive durations are rejected."""
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSettings:
    """Tests for the Settings model."""

    def test_defaults(self):
        """Test defaults when nothing is configured."""
        settings = Settings(_env_file=None)

        assert settings.endpoint is None
        assert settings.token is None
        assert settings.timeout == DEFAULT_TIMEOUT_SECONDS
        assert settings.exec_idle_timeout == DEFAULT_EXEC_IDLE_TIMEOUT_SECONDS
        assert settings.insecure is False
        assert settings.user_agent == DEFAULT_USER_AGENT
        assert settings.is_configured is False

    def test_reads_prefixed_environment(self, monkeypatch):
        """Test SLICER_* variables populate the settings."""
        monkeypatch.setenv("SLICER_ENDPOINT", "https://slicer.example.com/")
        monkeypatch.setenv("SLICER_TOKEN", "secret-token")
        monkeypatch.setenv("SLICER_TIMEOUT", "1m")
        monkeypatch.setenv("SLICER_INSECURE", "true")

        settings = Settings(_env_file=None)

        assert settings.endpoint == "https://slicer.example.com"
        assert settings.token == "secret-token"
        assert settings.timeout == 60.0
        assert settings.insecure is True
        assert settings.is_configured is True

    def test_token_not_in_repr(self):
        """Test the token never shows up in the repr."""
        settings = Settings(_env_file=None, endpoint="https://x", token="super-secret")
        assert "super-secret" not in repr(settings)

    def test_invalid_timeout_rejected(self):
        """Test a bad timeout fails validation."""
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, timeout="forever")

    def test_blank_endpoint_is_none(self):
        """Test an empty endpoint counts as not configured."""
        settings = Settings(_env_file=None, endpoint="  ", token="t")
        assert settings.endpoint is None
        assert settings.is_configured is False


class TestGetSettings:
    """Tests for the cached settings accessor."""

    def test_cached_instance(self, monkeypatch):
        """Test repeated calls return the same instance."""
        monkeypatch.setenv("SLICER_ENDPOINT", "https://a.example.com")
        first = get_settings(force_reload=True)
        assert get_settings() is first

    def test_overrides_win_over_environment(self, monkeypatch):
        """Test explicit values take precedence and None is ignored."""
        monkeypatch.setenv("SLICER_ENDPOINT", "https://env.example.com")
        monkeypatch.setenv("SLICER_TOKEN", "env-token")

        settings = get_settings(endpoint="https://flag.example.com", token=None)

        assert settings.endpoint == "https://flag.example.com"
        assert settings.token == "env-token"

    def test_force_reload_rereads_environment(self, monkeypatch):
        """Test force_reload picks up changed variables."""
        monkeypatch.setenv("SLICER_TIMEOUT", "5s")
        assert get_settings(force_reload=True).timeout == 5.0

        monkeypatch.setenv("SLICER_TIMEOUT", "7s")
        assert get_settings(force_reload=True).timeout == 7.0
