from typing import Annotated

from fastapi import APIRouter, Body, Depends

from gradesync.adapters.events.base import AnyChangeEvent
from gradesync.core.auth import authenticate_actor
from gradesync.core.runtime import get_change_feed
from gradesync.schemas.records import ChangeIngestResponse

router = APIRouter(tags=["Changes"])


@router.post("/changes", response_model=ChangeIngestResponse, status_code=202)
async def ingest_change(
    event: Annotated[AnyChangeEvent, Body(discriminator="event_type")],
    actor_id: Annotated[str, Depends(authenticate_actor)],
) -> ChangeIngestResponse:
    """Publish a change event produced outside this process.

    Used by database triggers or other services to push changes to
    subscribers; nothing is stored and there is no replay. ``changed_by``
    defaults to the calling actor.
    """
    if event.changed_by is None:
        event = event.model_copy(update={"changed_by": actor_id})
    channels = get_change_feed().publish(event)
    return ChangeIngestResponse(accepted=True, channels=channels)
