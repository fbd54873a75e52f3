from typing import Annotated

from fastapi import APIRouter, Depends

from gradesync.core.auth import authenticate_actor
from gradesync.core.runtime import get_rate_limiter
from gradesync.schemas.records import QuotaCheckRequest, QuotaCheckResponse, QuotaPolicyResponse
from gradesync.services.rate_limiter import Denied

router = APIRouter(tags=["Quota"])


@router.post("/quota/check", response_model=QuotaCheckResponse)
async def check_quota(
    body: QuotaCheckRequest,
    actor_id: Annotated[str, Depends(authenticate_actor)],
) -> QuotaCheckResponse:
    """Count one request against a quota bucket for the calling actor.

    Clients call this before a bulk operation (e.g. a grade import) and
    show ``retry_after_seconds`` when denied. A denial is answered with
    HTTP 200 because it is an expected outcome.

    Raises:
        UnknownEndpointError: 400 when the bucket has no policy.
    """
    decision = get_rate_limiter().check_endpoint(actor_id, body.endpoint)
    return QuotaCheckResponse(
        endpoint=body.endpoint,
        allowed=decision.allowed,
        limit=decision.limit,
        remaining=decision.remaining,
        reset_at=int(decision.reset_at),
        retry_after_seconds=decision.retry_after_seconds if isinstance(decision, Denied) else None,
    )


@router.get("/quota/policies", response_model=list[QuotaPolicyResponse])
async def list_policies(
    actor_id: Annotated[str, Depends(authenticate_actor)],
) -> list[QuotaPolicyResponse]:
    """List the configured quota buckets."""
    return [
        QuotaPolicyResponse(
            endpoint=endpoint,
            max_requests=policy.max_requests,
            window_minutes=policy.window_minutes,
        )
        for endpoint, policy in sorted(get_rate_limiter().policies.items())
    ]
