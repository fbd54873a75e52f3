"""Rate limit window stores.

The limiter starts with an in-memory store and can move to SQLite (or any
store offering an atomic compare-and-increment) without touching callers.
"""

from gradesync.adapters.rate_limit.base import AbstractWindowStore, RateLimitWindow
from gradesync.adapters.rate_limit.factory import create_window_store
from gradesync.adapters.rate_limit.in_memory import InMemoryWindowStore
from gradesync.adapters.rate_limit.sqlite import SQLiteWindowStore

__all__ = [
    "AbstractWindowStore",
    "InMemoryWindowStore",
    "RateLimitWindow",
    "SQLiteWindowStore",
    "create_window_store",
]
