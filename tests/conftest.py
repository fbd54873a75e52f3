"""Pytest configuration and fixtures shared across all test modules.

Environment defaults are set before any gradesync import so the global
settings object is built from them.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("APP_API_KEY_REQUIRED", "true")
os.environ.setdefault("APP_API_KEYS", "alice:test-api-key-123,bob:test-api-key-456")
os.environ.setdefault("STORE_PROVIDER", "memory")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from gradesync.core import runtime  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_runtime():
    """Give every test its own record store, change feed and limiter."""
    runtime.reset_runtime()
    yield
    runtime.reset_runtime()


@pytest.fixture
def alice_headers() -> dict[str, str]:
    return {"X-API-Key": "test-api-key-123"}


@pytest.fixture
def bob_headers() -> dict[str, str]:
    return {"X-API-Key": "test-api-key-456"}
