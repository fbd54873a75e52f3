"""In-memory window store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: every read-check-write runs under one lock.
- Superseded windows are kept until ``purge_expired`` removes them.
"""

from __future__ import annotations

import threading
from dataclasses import replace

from gradesync.adapters.rate_limit.base import AbstractWindowStore, RateLimitWindow


class InMemoryWindowStore(AbstractWindowStore):
    """Window store backed by a dict of per-pair window histories."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._windows: dict[tuple[str, str], list[RateLimitWindow]] = {}

    def _current_locked(self, key: tuple[str, str], since: float) -> RateLimitWindow | None:
        history = self._windows.get(key)
        if not history:
            return None
        latest = history[-1]
        return latest if latest.window_start > since else None

    def find_current(self, actor_id: str, endpoint: str, *, since: float) -> RateLimitWindow | None:
        with self._lock:
            return self._current_locked((actor_id, endpoint), since)

    def open_window(
        self, actor_id: str, endpoint: str, *, now: float, since: float
    ) -> tuple[RateLimitWindow, bool]:
        key = (actor_id, endpoint)
        with self._lock:
            existing = self._current_locked(key, since)
            if existing is not None:
                return existing, False
            window = RateLimitWindow(
                actor_id=actor_id,
                endpoint=endpoint,
                window_start=now,
                request_count=1,
            )
            self._windows.setdefault(key, []).append(window)
            return window, True

    def try_increment(
        self, window: RateLimitWindow, *, max_requests: int
    ) -> RateLimitWindow | None:
        key = (window.actor_id, window.endpoint)
        with self._lock:
            history = self._windows.get(key)
            if not history or history[-1].window_start != window.window_start:
                # superseded or purged since the caller read it
                return None
            latest = history[-1]
            if latest.request_count >= max_requests:
                return None
            updated = replace(latest, request_count=latest.request_count + 1)
            history[-1] = updated
            return updated

    def purge_expired(self, *, older_than: float) -> int:
        removed = 0
        with self._lock:
            for key in list(self._windows):
                history = self._windows[key]
                kept = [w for w in history if w.window_start >= older_than]
                removed += len(history) - len(kept)
                if kept:
                    self._windows[key] = kept
                else:
                    del self._windows[key]
        return removed

    def count_windows(self) -> int:
        """Total windows held, superseded ones included."""

        with self._lock:
            return sum(len(history) for history in self._windows.values())
