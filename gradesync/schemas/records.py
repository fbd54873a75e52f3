"""Pydantic schemas for the record store and quota API."""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class RecordInsertRequest(BaseModel):
    """Body of ``POST /v1/tables/{table}/records``."""

    record: dict[str, Any] = Field(
        ...,
        description="Record to create. An id is generated when absent.",
    )


class RecordUpdateRequest(BaseModel):
    """Body of ``PATCH /v1/tables/{table}/records/{id}``."""

    changes: dict[str, Any] = Field(
        ...,
        description="Fields to overwrite on the record.",
    )

    @field_validator("changes")
    @classmethod
    def _changes_not_empty(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value:
            raise ValueError("changes must contain at least one field")
        return value


class RecordResponse(BaseModel):
    record: dict[str, Any]


class RecordListResponse(BaseModel):
    table: str
    records: list[dict[str, Any]]
    count: int


class QuotaCheckRequest(BaseModel):
    """Body of ``POST /v1/quota/check``."""

    endpoint: str = Field(
        ...,
        min_length=1,
        description="Quota bucket to count the request against (e.g. 'bulk-grades').",
    )


class QuotaCheckResponse(BaseModel):
    """Outcome of a quota check. A denial is a normal answer, not an error."""

    endpoint: str
    allowed: bool
    limit: int
    remaining: int
    reset_at: int = Field(..., description="UNIX seconds when the current window ends.")
    retry_after_seconds: int | None = Field(
        default=None,
        description="Seconds until the window resets; only set when denied.",
    )


class QuotaPolicyResponse(BaseModel):
    endpoint: str
    max_requests: int
    window_minutes: int


class ChangeIngestResponse(BaseModel):
    accepted: bool
    channels: int = Field(..., description="Subscribed channels the event was queued for.")
