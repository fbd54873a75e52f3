"""Pydantic schemas for change events and subscription filters.

Change events are a tagged variant discriminated on ``event_type`` so that
dispatch is resolved once, from the type, rather than by probing optional
payload fields.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

EventType = Literal["INSERT", "UPDATE", "DELETE"]
ALL_EVENT_TYPES: frozenset[str] = frozenset({"INSERT", "UPDATE", "DELETE"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _ChangeEventBase(BaseModel):
    table: str = Field(..., min_length=1, description="Table the change happened in.")
    filter_match: bool = Field(
        default=True,
        description="True when the source already applied the subscription filter.",
    )
    commit_timestamp: datetime = Field(default_factory=_utcnow)
    changed_by: str | None = Field(
        default=None,
        description="Actor whose write produced the event, when the source knows it.",
    )


class InsertEvent(_ChangeEventBase):
    """A record was created."""

    event_type: Literal["INSERT"] = "INSERT"
    new: dict[str, Any] = Field(..., description="The inserted record.")

    @property
    def record_id(self) -> Any:
        return self.new.get("id")


class UpdateEvent(_ChangeEventBase):
    """A record changed; ``old`` may only carry the primary key."""

    event_type: Literal["UPDATE"] = "UPDATE"
    new: dict[str, Any] = Field(..., description="The record after the change.")
    old: dict[str, Any] = Field(default_factory=dict, description="The record before the change.")

    @property
    def record_id(self) -> Any:
        return self.new.get("id", self.old.get("id"))


class DeleteEvent(_ChangeEventBase):
    """A record was removed."""

    event_type: Literal["DELETE"] = "DELETE"
    old: dict[str, Any] = Field(..., description="The removed record (at least its id).")

    @property
    def record_id(self) -> Any:
        return self.old.get("id")


ChangeEvent = Annotated[
    Union[InsertEvent, UpdateEvent, DeleteEvent],
    Field(discriminator="event_type"),
]

change_event_adapter: TypeAdapter[InsertEvent | UpdateEvent | DeleteEvent] = TypeAdapter(ChangeEvent)


def parse_change_event(data: dict[str, Any]) -> InsertEvent | UpdateEvent | DeleteEvent:
    """Validate a raw event payload into its tagged variant."""
    return change_event_adapter.validate_python(data)


class ChangeFilter(BaseModel):
    """Which change events a subscription wants.

    Attributes:
        table: Table to watch.
        events: Event types to deliver; all when empty.
        column: Optional column for an equality filter.
        value: Value the column must equal.
    """

    model_config = {"frozen": True}

    table: str = Field(..., min_length=1)
    events: frozenset[EventType] = Field(default_factory=frozenset)
    column: str | None = None
    value: Any = None

    @classmethod
    def parse(cls, table: str, expression: str | None = None, *, event: str = "*") -> "ChangeFilter":
        """Build a filter from the ``column=eq.value`` notation.

        Examples:
            >>> ChangeFilter.parse("grades", "subject_id=eq.42").value
            '42'
            >>> ChangeFilter.parse("grades", event="UPDATE").events
            frozenset({'UPDATE'})
        """
        events: frozenset[str] = frozenset() if event == "*" else frozenset({event.upper()})
        if not expression:
            return cls(table=table, events=events)

        column, sep, rest = expression.partition("=")
        operator, dot, value = rest.partition(".")
        if not sep or not dot or operator != "eq" or not column:
            raise ValueError(f"Unsupported filter expression: {expression!r} (expected 'column=eq.value')")
        return cls(table=table, events=events, column=column, value=value)

    def matches(self, event: InsertEvent | UpdateEvent | DeleteEvent) -> bool:
        """Return True when ``event`` falls inside this filter."""
        if event.table != self.table:
            return False
        if self.events and event.event_type not in self.events:
            return False
        if self.column is None:
            return True

        rows: list[dict[str, Any]] = []
        if isinstance(event, (InsertEvent, UpdateEvent)):
            rows.append(event.new)
        if isinstance(event, (UpdateEvent, DeleteEvent)):
            rows.append(event.old)
        # values from the string notation compare as text
        return any(
            self.column in row and str(row[self.column]) == str(self.value)
            for row in rows
        )
