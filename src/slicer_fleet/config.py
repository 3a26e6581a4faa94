"""
slicer-fleet configuration

Settings are loaded from (in order of precedence):
1. Explicit keyword arguments (CLI flags end up here)
2. Environment variables prefixed with SLICER_
3. A .env file in the working directory

Key settings:
- SLICER_ENDPOINT: Fleet manager API URL
- SLICER_TOKEN: Bearer token sent with every request
- SLICER_TIMEOUT: Timeout for single request/response calls ("30s", "1m30s" or seconds)
- SLICER_INSECURE: Skip TLS certificate verification (opt-in, off by default)
- SLICER_EXEC_IDLE_TIMEOUT: Seconds without an exec frame before the stream is failed
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
DEFAULT_USER_AGENT = f"slicer-fleet/{VERSION}"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_EXEC_IDLE_TIMEOUT_SECONDS = 300.0

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_duration(value: str | float | int) -> float:
    """Parse a Go-style duration ("30s", "1m30s", "250ms") into seconds.

    Bare numbers are taken as seconds.

    Raises:
        ValueError: If the value is not a positive duration.
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            parts = _DURATION_PART.findall(text)
            if not parts or "".join(n + u for n, u in parts) != text:
                raise ValueError(f"Invalid duration: {value!r}")
            seconds = sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    if seconds <= 0:
        raise ValueError(f"Duration must be positive, got: {value!r}")
    return seconds


class Settings(BaseSettings):
    """Connection settings for the fleet manager."""

    endpoint: Optional[str] = None
    token: Optional[str] = Field(default=None, repr=False)
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    insecure: bool = False
    exec_idle_timeout: float = DEFAULT_EXEC_IDLE_TIMEOUT_SECONDS
    user_agent: str = DEFAULT_USER_AGENT

    model_config = SettingsConfigDict(
        env_prefix="SLICER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("timeout", "exec_idle_timeout", mode="before")
    @classmethod
    def _parse_durations(cls, value):
        if value is None or value == "":
            return value
        return parse_duration(value)

    @field_validator("endpoint", mode="before")
    @classmethod
    def _strip_endpoint(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str):
            value = value.strip().rstrip("/")
            return value or None
        return value

    @property
    def is_configured(self) -> bool:
        """Check if both endpoint and token are present."""
        return bool(self.endpoint and self.token)


_settings: Optional[Settings] = None


def get_settings(force_reload: bool = False, **overrides) -> Settings:
    """
    Get the process-wide Settings instance.

    Args:
        force_reload: Re-read the environment even if settings were loaded.
        **overrides: Explicit values that win over the environment. Passing
                     any override builds a fresh instance.

    Returns:
        Settings instance
    """
    global _settings

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if _settings is None or force_reload or overrides:
        _settings = Settings(**overrides)
        logger.debug(
            f"Loaded settings: endpoint={_settings.endpoint} "
            f"timeout={_settings.timeout}s insecure={_settings.insecure}"
        )

    return _settings
