"""Client configuration via Pydantic Settings.

The only environment-derived configuration is the location of the scanning
backend plus a handful of client-side tuning knobs.  Every field can be set
through a ``PEROXIDE_``-prefixed environment variable or a ``.env`` file in
the working directory.

Usage::

    from peroxide.config import get_settings

    settings = get_settings()
    print(settings.api_url("upload"))  # http://localhost:3001/api/upload

The ``get_settings`` function is cached with ``functools.lru_cache``. To
override settings in tests, set the relevant environment variables and call
``get_settings.cache_clear()``, or construct :class:`Settings` directly and
pass it to the component under test.
"""
from __future__ import annotations

import functools
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """PEroxide client settings.

    Environment variables are read case-insensitively with the ``PEROXIDE_``
    prefix (``PEROXIDE_API_HOST``, ``PEROXIDE_FETCH_MAX_ATTEMPTS`` and so on).
    """

    model_config = SettingsConfigDict(
        env_prefix="PEROXIDE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Backend location
    api_scheme: Literal["http", "https"] = Field(
        default="http",
        description="URL scheme used to reach the scanning backend",
    )
    api_host: str = Field(
        default="localhost",
        min_length=1,
        description="Hostname or IP address of the scanning backend",
    )
    api_port: int = Field(
        default=3001,
        ge=1,
        le=65535,
        description="TCP port of the scanning backend",
    )
    api_prefix: str = Field(
        default="/api",
        description="Path prefix shared by every backend endpoint",
    )

    # HTTP
    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the upload and result requests (the event stream has none)",
    )

    # Result fetching
    fetch_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Total attempts made to retrieve a scan result before giving up",
    )
    fetch_retry_base_delay: float = Field(
        default=0.5,
        ge=0,
        description="Base delay in seconds for exponential back-off between result attempts",
    )
    still_scanning_repolls: int = Field(
        default=0,
        ge=0,
        description="Extra result fetches made while the backend still reports 'scanning'",
    )

    # Log window
    log_row_height: int = Field(default=32, ge=1, description="Fixed pixel height of one log row")
    log_viewport_height: int = Field(
        default=240,
        ge=1,
        description="Pixel height of the visible log viewport",
    )

    # Diagnostics
    log_level: str = Field(default="INFO", description="Root logging level")

    @field_validator("api_prefix")
    @classmethod
    def normalise_prefix(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if v and not v.startswith("/"):
            v = "/" + v
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v!r}")
        return level

    @property
    def base_url(self) -> str:
        """Return ``scheme://host:port`` for the configured backend."""
        return f"{self.api_scheme}://{self.api_host}:{self.api_port}"

    def api_url(self, *parts: str) -> str:
        """Build an absolute endpoint URL from path *parts*.

        ``settings.api_url("scan-status", scan_id)`` yields
        ``http://localhost:3001/api/scan-status/<scan_id>``.
        """
        path = "/".join(part.strip("/") for part in parts if part)
        return f"{self.base_url}{self.api_prefix}/{path}"


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached client settings singleton.

    The first call reads environment variables (and ``.env``). Subsequent calls
    return the cached instance. Clear the cache with ``get_settings.cache_clear()``
    between tests.
    """
    return Settings()
