"""In-process authoritative record store.

Each successful write publishes the matching change event to the attached
feed, the way a database's replication stream would.
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Mapping

from gradesync.adapters.events.in_memory import InMemoryChangeFeed
from gradesync.adapters.store.base import AbstractRecordStore, Record
from gradesync.core.errors import RecordNotFoundError, ValidationAppError
from gradesync.schemas.events import DeleteEvent, InsertEvent, UpdateEvent

logger = logging.getLogger(__name__)


class InMemoryRecordStore(AbstractRecordStore):
    """Dict-backed tables in insertion order.

    Rows are keyed by ``str(id)`` so path ids (always strings) find records
    whose stored id is numeric; the record keeps its id as given.
    """

    def __init__(self, feed: InMemoryChangeFeed | None = None) -> None:
        self._tables: dict[str, dict[str, Record]] = {}
        self._feed = feed

    def seed(self, table: str, records: list[Record]) -> None:
        """Load fixtures without emitting change events."""
        rows = self._tables.setdefault(table, {})
        for record in records:
            rows[str(record["id"])] = copy.deepcopy(record)

    async def read(self, table: str, filters: Mapping[str, Any] | None = None) -> list[Record]:
        rows = self._tables.get(table, {})
        wanted = dict(filters or {})
        return [
            copy.deepcopy(record)
            for record in rows.values()
            if all(str(record.get(column)) == str(value) for column, value in wanted.items())
        ]

    async def write(
        self,
        table: str,
        target_id: Any,
        changes: Mapping[str, Any],
        *,
        actor_id: str | None = None,
    ) -> Record:
        rows = self._tables.get(table, {})
        current = rows.get(str(target_id))
        if current is None:
            raise self._not_found(table, target_id)
        if "id" in changes and str(changes["id"]) != str(target_id):
            raise ValidationAppError(
                code="record_id_immutable",
                message="A record's id cannot be changed",
                details={"table": table, "target_id": str(target_id)},
            )

        old = copy.deepcopy(current)
        # the stored id keeps its original type
        current.update(copy.deepcopy({k: v for k, v in changes.items() if k != "id"}))
        self._publish(UpdateEvent(table=table, new=copy.deepcopy(current), old=old, changed_by=actor_id))
        logger.debug("store.write", extra={"table": table, "target_id": str(target_id)})
        return copy.deepcopy(current)

    async def insert(self, table: str, record: Mapping[str, Any], *, actor_id: str | None = None) -> Record:
        rows = self._tables.setdefault(table, {})
        new = copy.deepcopy(dict(record))
        new.setdefault("id", str(uuid.uuid4()))
        if str(new["id"]) in rows:
            raise ValidationAppError(
                code="record_id_conflict",
                message=f"Record '{new['id']}' already exists in '{table}'",
                details={"table": table, "target_id": str(new["id"])},
            )
        rows[str(new["id"])] = new
        self._publish(InsertEvent(table=table, new=copy.deepcopy(new), changed_by=actor_id))
        logger.debug("store.insert", extra={"table": table, "target_id": str(new["id"])})
        return copy.deepcopy(new)

    async def delete(self, table: str, target_id: Any, *, actor_id: str | None = None) -> Record:
        rows = self._tables.get(table, {})
        removed = rows.pop(str(target_id), None)
        if removed is None:
            raise self._not_found(table, target_id)
        self._publish(DeleteEvent(table=table, old=copy.deepcopy(removed), changed_by=actor_id))
        logger.debug("store.delete", extra={"table": table, "target_id": str(target_id)})
        return removed

    def _publish(self, event: InsertEvent | UpdateEvent | DeleteEvent) -> None:
        if self._feed is not None:
            self._feed.publish(event)

    @staticmethod
    def _not_found(table: str, target_id: Any) -> RecordNotFoundError:
        return RecordNotFoundError(
            code="record_not_found",
            message=f"No record '{target_id}' in '{table}'",
            details={"table": table, "target_id": str(target_id)},
        )
