from __future__ import annotations

from fastapi import APIRouter

from gradesync.core.runtime import get_change_feed

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check() -> dict:
    """Liveness check; also reports how many change channels are open."""

    return {"status": "ok", "change_channels": get_change_feed().channel_count}
