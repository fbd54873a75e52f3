"""SQLite window store.

Counters survive restarts and can be shared by several worker processes on
one host. The increment is a single conditional UPDATE so the limit holds at
the storage layer even when two processes race the same actor+endpoint.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

from gradesync.adapters.rate_limit.base import AbstractWindowStore, RateLimitWindow


class SQLiteWindowStore(AbstractWindowStore):
    """Durable window store on SQLite.

    - Single connection per instance.
    - Thread-safe via RLock; cross-process safety comes from SQLite locking.
    """

    def __init__(self, path: str) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        self._db = sqlite3.connect(
            path,
            check_same_thread=False,  # guarded by the RLock below
            isolation_level=None,  # autocommit; explicit BEGIN IMMEDIATE where needed
        )
        if path != ":memory:":
            self._db.execute("PRAGMA journal_mode=WAL;")
        self._db.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_limits (
                id            INTEGER PRIMARY KEY AUTOINCREMENT,
                actor_id      TEXT NOT NULL,
                endpoint      TEXT NOT NULL,
                window_start  REAL NOT NULL,
                request_count INTEGER NOT NULL
            )
            """
        )
        self._db.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_rate_limits_pair
            ON rate_limits (actor_id, endpoint, window_start)
            """
        )
        self._lock = threading.RLock()

    def _select_current(self, actor_id: str, endpoint: str, since: float) -> RateLimitWindow | None:
        row = self._db.execute(
            """
            SELECT window_start, request_count FROM rate_limits
            WHERE actor_id = ? AND endpoint = ? AND window_start > ?
            ORDER BY window_start DESC
            LIMIT 1
            """,
            (actor_id, endpoint, since),
        ).fetchone()
        if not row:
            return None
        return RateLimitWindow(
            actor_id=actor_id,
            endpoint=endpoint,
            window_start=row[0],
            request_count=row[1],
        )

    def find_current(self, actor_id: str, endpoint: str, *, since: float) -> RateLimitWindow | None:
        with self._lock:
            return self._select_current(actor_id, endpoint, since)

    def open_window(
        self, actor_id: str, endpoint: str, *, now: float, since: float
    ) -> tuple[RateLimitWindow, bool]:
        with self._lock:
            # IMMEDIATE takes the write lock up front so another process
            # cannot insert a competing window between our SELECT and INSERT.
            self._db.execute("BEGIN IMMEDIATE")
            try:
                existing = self._select_current(actor_id, endpoint, since)
                if existing is None:
                    self._db.execute(
                        """
                        INSERT INTO rate_limits (actor_id, endpoint, window_start, request_count)
                        VALUES (?, ?, ?, 1)
                        """,
                        (actor_id, endpoint, now),
                    )
                self._db.execute("COMMIT")
            except Exception:
                self._db.execute("ROLLBACK")
                raise

        if existing is not None:
            return existing, False
        return (
            RateLimitWindow(actor_id=actor_id, endpoint=endpoint, window_start=now, request_count=1),
            True,
        )

    def try_increment(
        self, window: RateLimitWindow, *, max_requests: int
    ) -> RateLimitWindow | None:
        with self._lock:
            cursor = self._db.execute(
                """
                UPDATE rate_limits
                SET request_count = request_count + 1
                WHERE actor_id = ? AND endpoint = ? AND window_start = ?
                  AND request_count < ?
                  AND NOT EXISTS (
                      SELECT 1 FROM rate_limits AS newer
                      WHERE newer.actor_id = ? AND newer.endpoint = ?
                        AND newer.window_start > ?
                  )
                """,
                (
                    window.actor_id,
                    window.endpoint,
                    window.window_start,
                    max_requests,
                    window.actor_id,
                    window.endpoint,
                    window.window_start,
                ),
            )
            if cursor.rowcount != 1:
                return None
            row = self._db.execute(
                """
                SELECT request_count FROM rate_limits
                WHERE actor_id = ? AND endpoint = ? AND window_start = ?
                """,
                (window.actor_id, window.endpoint, window.window_start),
            ).fetchone()
        return RateLimitWindow(
            actor_id=window.actor_id,
            endpoint=window.endpoint,
            window_start=window.window_start,
            request_count=row[0],
        )

    def purge_expired(self, *, older_than: float) -> int:
        with self._lock:
            cursor = self._db.execute(
                "DELETE FROM rate_limits WHERE window_start < ?",
                (older_than,),
            )
            return cursor.rowcount

    def close(self) -> None:
        with self._lock:
            self._db.close()
