"""Optimistic mutation cache scoped to one actor session.

Every local change goes through one state machine: ``apply_optimistic``
applies the mutation to the materialized records and hands back a
``PendingMutation``, then exactly one ``commit`` or ``rollback`` resolves
that handle. The cache performs no I/O; it only tells callers when a
collection must be refetched.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from gradesync.core.errors import InvariantViolationError

logger = logging.getLogger(__name__)

Record = dict[str, Any]
Predicate = Callable[[Record], bool]
Transform = Callable[[Record], Record]


def matches_id(record_id: Any) -> Predicate:
    """Predicate selecting the record with the given id."""

    def _predicate(record: Record) -> bool:
        return record.get("id") == record_id

    return _predicate


def merge_changes(changes: Record) -> Transform:
    """Transform overlaying ``changes`` on a record; ``id`` is never rewritten."""
    safe_changes = {k: v for k, v in changes.items() if k != "id"}

    def _transform(record: Record) -> Record:
        return {**record, **safe_changes}

    return _transform


@dataclass(frozen=True)
class UpdateRecords:
    """Replace every record matching ``predicate`` with ``transform(record)``."""

    predicate: Predicate
    transform: Transform

    def apply(self, records: list[Record]) -> list[Record]:
        updated = []
        for record in records:
            if self.predicate(record):
                new_record = self.transform(copy.deepcopy(record))
                if new_record.get("id") != record.get("id"):
                    raise InvariantViolationError(
                        code="record_id_changed",
                        message="A transform must not change a record's id",
                        details={"target_id": str(record.get("id"))},
                    )
                updated.append(new_record)
            else:
                updated.append(record)
        return updated


@dataclass(frozen=True)
class InsertRecord:
    """Append ``record`` to the collection."""

    record: Record

    def apply(self, records: list[Record]) -> list[Record]:
        return [*records, copy.deepcopy(self.record)]


@dataclass(frozen=True)
class DeleteRecords:
    """Remove every record matching ``predicate``."""

    predicate: Predicate

    def apply(self, records: list[Record]) -> list[Record]:
        return [record for record in records if not self.predicate(record)]


OptimisticMutation = UpdateRecords | InsertRecord | DeleteRecords


@dataclass(eq=False)
class PendingMutation:
    """Handle for one applied mutation; pass it back to commit or rollback."""

    mutation: OptimisticMutation
    confirmed: bool = False


@dataclass
class CacheEntry:
    """State held for one collection key.

    Attributes:
        committed: Materialized records (None when unloaded or invalidated).
        baseline: Records underneath the oldest entry in ``pending``.
        pending: Applied mutations in order. The head is always unresolved;
            confirmed ones wait here while an older mutation is in flight.
        stale: Set by invalidation until the next ``load``.
        invalidation_deferred: An invalidation waiting for pending to drain.
    """

    committed: list[Record] | None = None
    baseline: list[Record] | None = None
    pending: list[PendingMutation] = field(default_factory=list)
    stale: bool = False
    invalidation_deferred: bool = False

    def replay(self) -> list[Record] | None:
        current = copy.deepcopy(self.baseline)
        for pending in self.pending:
            if current is not None:
                current = pending.mutation.apply(current)
        return current


class OptimisticMutationCache:
    """Session-scoped collection cache with snapshot/commit/rollback.

    Single-owner: one instance per actor session, driven from one event
    loop, so no locking is needed.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._commits = 0
        self._rollbacks = 0
        self._invalidations = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"OptimisticMutationCache(keys={len(self._entries)}, pending={self.pending_keys()})"

    def _entry(self, collection_key: str) -> CacheEntry:
        return self._entries.setdefault(collection_key, CacheEntry())

    def load(self, collection_key: str, records: Iterable[Record]) -> None:
        """Install authoritative records for ``collection_key``.

        When mutations are pending, the fetched records become the rollback
        baseline and the pending mutations are replayed on top of them.
        """
        entry = self._entry(collection_key)
        entry.baseline = copy.deepcopy(list(records))
        entry.committed = entry.replay()
        entry.stale = False
        logger.debug(
            "cache.load",
            extra={
                "collection_key": collection_key,
                "size": len(entry.baseline),
                "rebased": len(entry.pending),
            },
        )

    def get(self, collection_key: str) -> list[Record] | None:
        """Return a copy of the materialized records, or None if unloaded."""
        entry = self._entries.get(collection_key)
        if entry is None or entry.committed is None:
            self._misses += 1
            return None
        self._hits += 1
        return copy.deepcopy(entry.committed)

    def find(self, collection_key: str, record_id: Any) -> Record | None:
        for record in self.get(collection_key) or []:
            if record.get("id") == record_id:
                return record
        return None

    def is_pending(self, collection_key: str) -> bool:
        entry = self._entries.get(collection_key)
        return bool(entry and entry.pending)

    def is_stale(self, collection_key: str) -> bool:
        entry = self._entries.get(collection_key)
        return bool(entry and entry.stale)

    def pending_keys(self) -> list[str]:
        return [key for key, entry in self._entries.items() if entry.pending]

    def apply_optimistic(
        self,
        collection_key: str,
        mutation: OptimisticMutation,
        *,
        compose: bool = False,
    ) -> PendingMutation:
        """Apply ``mutation`` to the materialized state.

        Args:
            collection_key: Collection to mutate.
            mutation: ``UpdateRecords``, ``InsertRecord`` or ``DeleteRecords``.
            compose: Allow stacking on already pending mutations. Stacked
                mutations may resolve in any order.

        Returns:
            The handle to pass to ``commit`` or ``rollback``.

        Raises:
            InvariantViolationError: A mutation is already pending and
                ``compose`` is False, or the mutation is malformed.
        """
        self.check_can_apply(collection_key, compose=compose)
        entry = self._entry(collection_key)

        # not loaded yet: nothing to show, but the pairing is still tracked
        materialized = mutation.apply(entry.committed) if entry.committed is not None else None

        if not entry.pending:
            entry.baseline = copy.deepcopy(entry.committed)
        pending = PendingMutation(mutation=mutation)
        entry.pending.append(pending)
        entry.committed = materialized
        logger.debug(
            "cache.apply_optimistic",
            extra={
                "collection_key": collection_key,
                "mutation": type(mutation).__name__,
                "depth": len(entry.pending),
            },
        )
        return pending

    def check_can_apply(self, collection_key: str, *, compose: bool = False) -> None:
        """Raise if ``apply_optimistic`` would be refused for this key."""
        if self.is_pending(collection_key) and not compose:
            raise InvariantViolationError(
                code="mutation_already_pending",
                message=(
                    f"Collection '{collection_key}' already has a pending mutation; "
                    "await its resolution or pass compose=True"
                ),
                details={"collection_key": collection_key},
            )

    def commit(self, collection_key: str, pending: PendingMutation | None = None) -> bool:
        """Confirm one pending mutation; the materialized state is kept.

        Args:
            collection_key: Collection the mutation was applied to.
            pending: Handle from ``apply_optimistic``; the latest unresolved
                mutation when omitted.

        Returns:
            True when a deferred invalidation was released and the caller
            must refetch ``collection_key``.

        Raises:
            InvariantViolationError: Nothing is pending for the key, or the
                handle is unknown or already resolved.
        """
        entry = self._require_pending(collection_key, "commit")
        pending = self._resolve_handle(collection_key, entry, pending, "commit")
        pending.confirmed = True
        self._fold_confirmed(entry)
        self._commits += 1
        logger.debug("cache.commit", extra={"collection_key": collection_key})
        return self._release_deferred(collection_key, entry)

    def rollback(self, collection_key: str, pending: PendingMutation | None = None) -> bool:
        """Undo one pending mutation.

        The records underneath it are restored and every mutation applied
        after it is replayed on top, so the others stay visible.

        Args:
            collection_key: Collection the mutation was applied to.
            pending: Handle from ``apply_optimistic``; the latest unresolved
                mutation when omitted.

        Returns:
            True when a deferred invalidation was released and the caller
            must refetch ``collection_key``.

        Raises:
            InvariantViolationError: Nothing is pending for the key, or the
                handle is unknown or already resolved.
        """
        entry = self._require_pending(collection_key, "rollback")
        pending = self._resolve_handle(collection_key, entry, pending, "rollback")
        entry.pending.remove(pending)
        entry.committed = entry.replay()
        self._fold_confirmed(entry)
        self._rollbacks += 1
        logger.info(
            "cache.rollback",
            extra={
                "collection_key": collection_key,
                "mutation": type(pending.mutation).__name__,
                "replayed": len(entry.pending),
            },
        )
        return self._release_deferred(collection_key, entry)

    def invalidate(self, collection_key: str, *, defer_if_pending: bool = False) -> bool:
        """Discard committed state for ``collection_key``.

        With a pending mutation the materialized records are kept (marked
        stale) so the in-flight change stays visible until the refetch
        rebases it. With ``defer_if_pending`` the invalidation instead
        waits for the pending mutation to resolve.

        Returns:
            True when the caller must refetch now.
        """
        entry = self._entry(collection_key)
        self._invalidations += 1

        if entry.pending and defer_if_pending:
            entry.invalidation_deferred = True
            logger.debug("cache.invalidate_deferred", extra={"collection_key": collection_key})
            return False

        entry.stale = True
        if not entry.pending:
            entry.committed = None
        logger.debug(
            "cache.invalidate",
            extra={"collection_key": collection_key, "pending": bool(entry.pending)},
        )
        return True

    def drop(self, collection_key: str) -> None:
        """Forget a collection entirely (session teardown of one view)."""
        entry = self._entries.get(collection_key)
        if entry is not None and entry.pending:
            raise InvariantViolationError(
                code="drop_with_pending",
                message=f"Cannot drop '{collection_key}' while a mutation is pending",
                details={"collection_key": collection_key},
            )
        self._entries.pop(collection_key, None)

    def stats(self) -> dict[str, int]:
        """Return lightweight cache metrics without exposing records."""
        return {
            "entries": len(self._entries),
            "pending": len(self.pending_keys()),
            "hits": self._hits,
            "misses": self._misses,
            "commits": self._commits,
            "rollbacks": self._rollbacks,
            "invalidations": self._invalidations,
        }

    def _require_pending(self, collection_key: str, operation: str) -> CacheEntry:
        entry = self._entries.get(collection_key)
        if entry is None or not entry.pending:
            logger.error(
                "cache.invariant_violation",
                extra={"collection_key": collection_key, "operation": operation},
            )
            raise InvariantViolationError(
                code="no_pending_mutation",
                message=f"{operation} called for '{collection_key}' with no pending mutation",
                details={"collection_key": collection_key},
            )
        return entry

    def _resolve_handle(
        self,
        collection_key: str,
        entry: CacheEntry,
        pending: PendingMutation | None,
        operation: str,
    ) -> PendingMutation:
        if pending is None:
            return next(p for p in reversed(entry.pending) if not p.confirmed)
        if pending.confirmed or not any(p is pending for p in entry.pending):
            logger.error(
                "cache.invariant_violation",
                extra={"collection_key": collection_key, "operation": operation},
            )
            raise InvariantViolationError(
                code="unknown_pending_mutation",
                message=f"{operation} called for '{collection_key}' with a mutation that is not pending",
                details={"collection_key": collection_key},
            )
        return pending

    @staticmethod
    def _fold_confirmed(entry: CacheEntry) -> None:
        # confirmed mutations at the head become part of the baseline
        while entry.pending and entry.pending[0].confirmed:
            confirmed = entry.pending.pop(0)
            if entry.baseline is not None:
                entry.baseline = confirmed.mutation.apply(entry.baseline)
        if not entry.pending:
            entry.baseline = None

    def _release_deferred(self, collection_key: str, entry: CacheEntry) -> bool:
        if entry.pending or not entry.invalidation_deferred:
            return False
        entry.invalidation_deferred = False
        entry.committed = None
        entry.stale = True
        logger.debug("cache.invalidate_released", extra={"collection_key": collection_key})
        return True
