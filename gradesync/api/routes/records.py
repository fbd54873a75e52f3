from typing import Annotated

from fastapi import APIRouter, Depends, Path, Request

from gradesync.core.auth import authenticate_actor
from gradesync.core.rate_limit import enforce_quota
from gradesync.core.runtime import get_record_store
from gradesync.schemas.records import (
    RecordInsertRequest,
    RecordListResponse,
    RecordResponse,
    RecordUpdateRequest,
)

router = APIRouter(tags=["Records"])

TableName = Annotated[str, Path(pattern=r"^[a-z_][a-z0-9_]*$", max_length=63)]


@router.get("/tables/{table}/records", response_model=RecordListResponse)
async def list_records(
    table: TableName,
    request: Request,
    actor_id: Annotated[str, Depends(authenticate_actor)],
) -> RecordListResponse:
    """Read a collection.

    Every query parameter is an equality filter on a column, e.g.
    ``?subject_id=42&semester=1``.
    """
    filters = dict(request.query_params)
    records = await get_record_store().read(table, filters)
    return RecordListResponse(table=table, records=records, count=len(records))


@router.post("/tables/{table}/records", response_model=RecordResponse, status_code=201)
async def insert_record(
    table: TableName,
    body: RecordInsertRequest,
    actor_id: Annotated[str, Depends(enforce_quota("create-grade"))],
) -> RecordResponse:
    """Create a record. Counts against ``create-grade`` unless overridden."""
    record = await get_record_store().insert(table, body.record, actor_id=actor_id)
    return RecordResponse(record=record)


@router.patch("/tables/{table}/records/{record_id}", response_model=RecordResponse)
async def update_record(
    table: TableName,
    record_id: str,
    body: RecordUpdateRequest,
    actor_id: Annotated[str, Depends(enforce_quota("update-grade"))],
) -> RecordResponse:
    """Overwrite fields of one record. Counts against ``update-grade``."""
    record = await get_record_store().write(table, record_id, body.changes, actor_id=actor_id)
    return RecordResponse(record=record)


@router.delete("/tables/{table}/records/{record_id}", response_model=RecordResponse)
async def delete_record(
    table: TableName,
    record_id: str,
    actor_id: Annotated[str, Depends(enforce_quota("delete-grade"))],
) -> RecordResponse:
    """Remove one record. Counts against ``delete-grade``."""
    record = await get_record_store().delete(table, record_id, actor_id=actor_id)
    return RecordResponse(record=record)
