"""Quota enforcement dependency for FastAPI routes.

Wires the sliding-window limiter into the HTTP layer. Every mutating route
names a quota bucket; clients may pick a different bucket with the
``X-Quota-Endpoint`` header (e.g. ``bulk-grades`` for an import).
A denial is returned by the limiter as a value and only becomes an HTTP
429 here, at the edge.
"""

from __future__ import annotations

from typing import Annotated, Awaitable, Callable

from fastapi import Depends, Header, HTTPException, status

from gradesync.core.auth import authenticate_actor
from gradesync.core.config import settings
from gradesync.core.runtime import get_rate_limiter
from gradesync.services.rate_limiter import Denied, RateLimitDecision


def quota_headers(decision: RateLimitDecision) -> dict[str, str]:
    """Build X-RateLimit-* (and Retry-After when denied) headers."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(int(decision.reset_at)),
    }
    if isinstance(decision, Denied):
        headers["Retry-After"] = str(decision.retry_after_seconds)
    return headers


def enforce_quota(default_endpoint: str) -> Callable[..., Awaitable[str]]:
    """Create a dependency counting one request against a quota bucket.

    Args:
        default_endpoint: Bucket used when no X-Quota-Endpoint header is sent.

    Returns:
        Dependency returning the authenticated actor id.

    Raises:
        HTTPException: 429 Too Many Requests when the quota is exhausted.
    """

    async def _enforce(
        actor_id: Annotated[str, Depends(authenticate_actor)],
        x_quota_endpoint: Annotated[str | None, Header(alias="X-Quota-Endpoint")] = None,
    ) -> str:
        if not settings.rate_limit.enabled:
            return actor_id

        # UnknownEndpointError propagates to the 400 handler
        decision = get_rate_limiter().check_endpoint(actor_id, x_quota_endpoint or default_endpoint)
        if decision.allowed:
            return actor_id

        headers = quota_headers(decision) if settings.rate_limit.include_headers else {}
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Rate limit exceeded. Try again in {decision.retry_after_seconds} seconds.",
            headers=headers or None,
        )

    return _enforce
