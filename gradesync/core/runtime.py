"""Process-wide service instances for the HTTP layer.

Instances are cached in-module so state (records, windows, channels) is
shared across requests. ``reset_runtime`` rebuilds them, mainly for tests.
"""

from __future__ import annotations

from gradesync.adapters.events.in_memory import InMemoryChangeFeed
from gradesync.adapters.rate_limit.factory import create_window_store
from gradesync.adapters.store.base import AbstractRecordStore
from gradesync.adapters.store.factory import create_record_store
from gradesync.core.config import settings
from gradesync.services.rate_limiter import SlidingWindowRateLimiter

_change_feed: InMemoryChangeFeed | None = None
_record_store: AbstractRecordStore | None = None
_limiter: SlidingWindowRateLimiter | None = None


def get_change_feed() -> InMemoryChangeFeed:
    global _change_feed
    if _change_feed is None:
        _change_feed = InMemoryChangeFeed()
    return _change_feed


def get_record_store() -> AbstractRecordStore:
    """Return the authoritative store, publishing into the change feed."""
    global _record_store
    if _record_store is None:
        _record_store = create_record_store(feed=get_change_feed())
    return _record_store


def get_rate_limiter() -> SlidingWindowRateLimiter:
    """Return the limiter built from the quota policy table at first use."""
    global _limiter
    if _limiter is None:
        _limiter = SlidingWindowRateLimiter(
            create_window_store(settings.rate_limit),
            policies=settings.quota_policies,
        )
    return _limiter


def reset_runtime() -> None:
    global _change_feed, _record_store, _limiter
    _change_feed = None
    _record_store = None
    _limiter = None
