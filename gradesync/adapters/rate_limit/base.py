"""Window store interface for the sliding-window rate limiter.

The limiter depends on this abstraction so the counter can live in process
memory for a single worker or in a shared database for several. Every
mutating method must be atomic with respect to concurrent callers for the
same (actor_id, endpoint) pair.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitWindow:
    """Counter for one actor+endpoint pair within one window.

    Attributes:
        actor_id: Acting user.
        endpoint: Quota bucket name (e.g. ``bulk-grades``).
        window_start: UNIX time in seconds of the first request in the window.
        request_count: Requests accepted so far in this window.
    """

    actor_id: str
    endpoint: str
    window_start: float
    request_count: int


class AbstractWindowStore(ABC):
    """Storage for rate limit windows."""

    @abstractmethod
    def find_current(self, actor_id: str, endpoint: str, *, since: float) -> RateLimitWindow | None:
        """Return the most recent window with ``window_start > since``, if any."""
        raise NotImplementedError

    @abstractmethod
    def open_window(
        self, actor_id: str, endpoint: str, *, now: float, since: float
    ) -> tuple[RateLimitWindow, bool]:
        """Create a window with ``request_count=1`` unless a current one exists.

        Args:
            actor_id: Acting user.
            endpoint: Quota bucket.
            now: Start time for the new window.
            since: Windows starting after this instant count as current.

        Returns:
            Tuple of (window, created). When another caller opened a window
            first, that window is returned with ``created=False`` and no
            counter change.
        """
        raise NotImplementedError

    @abstractmethod
    def try_increment(
        self, window: RateLimitWindow, *, max_requests: int
    ) -> RateLimitWindow | None:
        """Compare-and-increment the window's counter.

        Returns:
            The updated window when ``request_count < max_requests`` held at
            the storage layer, otherwise None.
        """
        raise NotImplementedError

    @abstractmethod
    def purge_expired(self, *, older_than: float) -> int:
        """Delete windows that started before ``older_than``.

        Returns:
            Number of windows removed.
        """
        raise NotImplementedError
