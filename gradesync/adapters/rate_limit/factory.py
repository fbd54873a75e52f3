"""Factory for the configured window store."""

from gradesync.adapters.rate_limit.base import AbstractWindowStore
from gradesync.adapters.rate_limit.in_memory import InMemoryWindowStore
from gradesync.adapters.rate_limit.sqlite import SQLiteWindowStore
from gradesync.core.config import RateLimitSettings, settings
from gradesync.core.errors import ValidationAppError


def create_window_store(rate_limit_settings: RateLimitSettings | None = None) -> AbstractWindowStore:
    """Instantiate the window store named by ``RATE_LIMIT_BACKEND``.

    Raises:
        ValidationAppError: If the backend is unknown.
    """
    cfg = rate_limit_settings or settings.rate_limit
    backend = cfg.backend.lower()

    if backend == "memory":
        return InMemoryWindowStore()

    if backend == "sqlite":
        return SQLiteWindowStore(cfg.sqlite_path)

    raise ValidationAppError(
        code="rate_limit_unknown_backend",
        message=f"Unknown rate limit backend: '{backend}'. Supported backends: memory, sqlite",
    )
