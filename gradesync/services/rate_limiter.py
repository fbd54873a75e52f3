"""Sliding-window rate limiter for mutating requests.

A window opens at an actor's first request for an endpoint and lasts
``window_minutes`` from that instant; the quota does not reset on clock
boundaries. Counting is race-free because the store performs the
compare-and-increment, never a separate read then write.
"""

from __future__ import annotations

import hashlib
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from gradesync.adapters.rate_limit.base import AbstractWindowStore, RateLimitWindow
from gradesync.core.config import QuotaPolicy
from gradesync.core.errors import UnknownEndpointError, ValidationAppError

logger = logging.getLogger(__name__)

# Attempts before giving up on a window that keeps being superseded
_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class Allowed:
    """The request may proceed.

    Attributes:
        request_count: Position of this request in its window.
        limit: Max requests per window.
        reset_at: UNIX seconds when the window expires.
    """

    request_count: int
    limit: int
    reset_at: float

    allowed = True

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.request_count)


@dataclass(frozen=True)
class Denied:
    """The quota is exhausted; retry after ``retry_after_seconds``."""

    retry_after_seconds: int
    limit: int
    reset_at: float

    allowed = False
    remaining = 0


RateLimitDecision = Allowed | Denied


def _hash_actor(actor_id: str) -> str:
    """Hash the actor id for logging without exposing identities."""
    return hashlib.sha256(actor_id.encode()).hexdigest()[:16]


class SlidingWindowRateLimiter:
    """Bounds mutation throughput per (actor_id, endpoint)."""

    def __init__(
        self,
        store: AbstractWindowStore,
        *,
        policies: Mapping[str, QuotaPolicy] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Window store providing atomic open/increment.
            policies: Central endpoint -> quota table used by ``check_endpoint``.
            clock: Time source returning UNIX time in seconds.
        """
        self._store = store
        self._policies = dict(policies or {})
        self._clock = clock

    @property
    def policies(self) -> dict[str, QuotaPolicy]:
        return dict(self._policies)

    def policy_for(self, endpoint: str) -> QuotaPolicy:
        """Return the configured quota for an endpoint.

        Raises:
            UnknownEndpointError: If the endpoint has no policy.
        """
        policy = self._policies.get(endpoint)
        if policy is None:
            raise UnknownEndpointError(
                code="unknown_quota_endpoint",
                message=f"No quota policy configured for endpoint '{endpoint}'",
                details={"endpoint": endpoint},
            )
        return policy

    def check_endpoint(self, actor_id: str, endpoint: str) -> RateLimitDecision:
        """Check using the central policy table."""
        policy = self.policy_for(endpoint)
        return self.check(actor_id, endpoint, policy.max_requests, policy.window_minutes)

    def check(
        self,
        actor_id: str,
        endpoint: str,
        max_requests: int,
        window_minutes: int,
    ) -> RateLimitDecision:
        """Count one request and decide whether it may proceed.

        Args:
            actor_id: Acting user.
            endpoint: Quota bucket name.
            max_requests: Requests allowed per window.
            window_minutes: Window length in minutes.

        Returns:
            ``Allowed`` or ``Denied`` with the seconds left in the window.

        Raises:
            ValidationAppError: If arguments are invalid.
        """
        if not actor_id:
            raise ValidationAppError(code="invalid_actor", message="actor_id must be a non-empty string")
        if not endpoint:
            raise ValidationAppError(code="invalid_endpoint", message="endpoint must be a non-empty string")
        if max_requests < 1 or window_minutes < 1:
            raise ValidationAppError(
                code="invalid_quota",
                message="max_requests and window_minutes must be >= 1",
                details={"endpoint": endpoint},
            )

        window_seconds = window_minutes * 60
        now = self._clock()
        since = now - window_seconds

        attempts = 0
        while True:
            attempts += 1
            window = self._store.find_current(actor_id, endpoint, since=since)
            if window is None:
                window, created = self._store.open_window(actor_id, endpoint, now=now, since=since)
                if created:
                    return self._allowed(window, max_requests, window_seconds, endpoint, actor_id)

            updated = self._store.try_increment(window, max_requests=max_requests)
            if updated is not None:
                return self._allowed(updated, max_requests, window_seconds, endpoint, actor_id)

            latest = self._store.find_current(actor_id, endpoint, since=since)
            superseded = latest is None or latest.window_start != window.window_start
            if not superseded or attempts >= _MAX_ATTEMPTS:
                return self._denied(window, max_requests, window_seconds, now, endpoint, actor_id)
            # window was superseded or purged concurrently; start over

    def purge_expired(self, *, retention_minutes: int) -> int:
        """Delete windows older than the retention period."""
        removed = self._store.purge_expired(older_than=self._clock() - retention_minutes * 60)
        if removed:
            logger.info("rate_limit.purged", extra={"windows_removed": removed})
        return removed

    def _allowed(
        self,
        window: RateLimitWindow,
        max_requests: int,
        window_seconds: int,
        endpoint: str,
        actor_id: str,
    ) -> Allowed:
        logger.debug(
            "rate_limit.allowed",
            extra={
                "actor_hash": _hash_actor(actor_id),
                "endpoint": endpoint,
                "request_count": window.request_count,
                "limit": max_requests,
            },
        )
        return Allowed(
            request_count=window.request_count,
            limit=max_requests,
            reset_at=window.window_start + window_seconds,
        )

    def _denied(
        self,
        window: RateLimitWindow,
        max_requests: int,
        window_seconds: int,
        now: float,
        endpoint: str,
        actor_id: str,
    ) -> Denied:
        reset_at = window.window_start + window_seconds
        retry_after = max(1, int(math.ceil(reset_at - now)))
        logger.warning(
            "rate_limit.denied",
            extra={
                "actor_hash": _hash_actor(actor_id),
                "endpoint": endpoint,
                "limit": max_requests,
                "retry_after_s": retry_after,
            },
        )
        return Denied(retry_after_seconds=retry_after, limit=max_requests, reset_at=reset_at)
