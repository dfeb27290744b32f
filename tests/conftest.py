"""Shared pytest configuration and fixtures for the PEroxide client tests.

Pins the ``PEROXIDE_*`` environment variables before any settings are read
so that a developer's ``.env`` or shell cannot leak into the test run.
"""
from __future__ import annotations

import os

import pytest

os.environ.setdefault("PEROXIDE_API_HOST", "scanner.test")
os.environ.setdefault("PEROXIDE_API_PORT", "3001")
os.environ.setdefault("PEROXIDE_FETCH_RETRY_BASE_DELAY", "0")

from peroxide.config import Settings, get_settings  # noqa: E402


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at a fake backend with instant retries."""
    return Settings(
        api_host="scanner.test",
        api_port=3001,
        fetch_max_attempts=3,
        fetch_retry_base_delay=0,
        _env_file=None,
    )
