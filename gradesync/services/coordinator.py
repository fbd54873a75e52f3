"""Synchronization coordinator for one actor session.

Sequences every mutation through the same state machine:

    IDLE -> (quota check) -> PENDING -> COMMITTED | ROLLED_BACK

A denied quota check never touches the cache. A failed remote write always
rolls back before the error reaches the caller. Independently, change
events from other actors invalidate tracked collections, which are then
refetched and rebased under any pending optimistic change.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Mapping

from gradesync.adapters.events.base import AbstractChangeSource, AnyChangeEvent
from gradesync.adapters.store.base import AbstractRecordStore
from gradesync.core.errors import AppError, RemoteWriteError, SubscriptionLostError, ValidationAppError
from gradesync.schemas.events import ChangeFilter
from gradesync.services.change_listener import ChangeHandlers, ChangeListener, SubscriptionHandle
from gradesync.services.mutation_cache import (
    DeleteRecords,
    InsertRecord,
    OptimisticMutation,
    OptimisticMutationCache,
    PendingMutation,
    UpdateRecords,
    matches_id,
    merge_changes,
)
from gradesync.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

RemoteWrite = Callable[[], Awaitable[Any]]


class MutationState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    DENIED = "denied"


@dataclass(frozen=True)
class MutationRequest:
    """A change to one record, consumed once by the coordinator."""

    target_id: Any
    changes: dict[str, Any]
    collection_key: str


@dataclass(frozen=True)
class MutationOutcome:
    """Result of ``mutate``.

    Attributes:
        state: COMMITTED or DENIED (failures raise instead).
        collection_key: Collection that was mutated.
        result: Whatever the remote write returned.
        retry_after_seconds: Set when the quota denied the mutation.
        invalidated: Untracked keys the caller must refetch itself.
        refetched: Tracked keys refetched after the commit.
    """

    state: MutationState
    collection_key: str
    result: Any = None
    retry_after_seconds: int | None = None
    invalidated: tuple[str, ...] = ()
    refetched: tuple[str, ...] = ()

    @property
    def denied(self) -> bool:
        return self.state is MutationState.DENIED


@dataclass
class _TrackedCollection:
    table: str
    filters: dict[str, Any]
    handle: SubscriptionHandle | None = None
    generation: int = 0
    reads_in_flight: int = 0
    lost: bool = False


@dataclass
class _Stats:
    committed: int = 0
    rolled_back: int = 0
    denied: int = 0
    remote_changes: int = 0
    own_echoes: int = 0
    refetch_failures: int = 0


class SyncCoordinator:
    """Composes rate limiter, optimistic cache and change listener."""

    def __init__(
        self,
        *,
        cache: OptimisticMutationCache,
        limiter: SlidingWindowRateLimiter,
        listener: ChangeListener,
        store: AbstractRecordStore,
        session_actor_id: str | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            cache: Session-owned optimistic cache.
            limiter: Quota gate consulted before each mutation.
            listener: Change listener feeding invalidations.
            store: Authoritative store used for refetches and record helpers.
            session_actor_id: When set, change events carrying this actor as
                ``changed_by`` are treated as echoes of our own writes.
        """
        self._cache = cache
        self._limiter = limiter
        self._listener = listener
        self._store = store
        self._session_actor_id = session_actor_id
        self._tracked: dict[str, _TrackedCollection] = {}
        self._stats = _Stats()

    @classmethod
    def for_session(
        cls,
        actor_id: str,
        *,
        store: AbstractRecordStore,
        source: AbstractChangeSource,
        limiter: SlidingWindowRateLimiter,
    ) -> "SyncCoordinator":
        """Build a coordinator with a fresh cache and listener for one session."""
        return cls(
            cache=OptimisticMutationCache(),
            limiter=limiter,
            listener=ChangeListener(source),
            store=store,
            session_actor_id=actor_id,
        )

    @property
    def cache(self) -> OptimisticMutationCache:
        return self._cache

    @property
    def listener(self) -> ChangeListener:
        return self._listener

    def stats(self) -> dict[str, int]:
        return {
            "committed": self._stats.committed,
            "rolled_back": self._stats.rolled_back,
            "denied": self._stats.denied,
            "remote_changes": self._stats.remote_changes,
            "own_echoes": self._stats.own_echoes,
            "refetch_failures": self._stats.refetch_failures,
            "tracked": len(self._tracked),
        }

    async def mutate(
        self,
        actor_id: str,
        endpoint: str,
        collection_key: str,
        mutation: OptimisticMutation,
        remote_write: RemoteWrite,
        *,
        dependent_keys: Iterable[str] = (),
        compose: bool = False,
    ) -> MutationOutcome:
        """Run one optimistic mutation end to end.

        Args:
            actor_id: Acting user, counted against ``endpoint``'s quota.
            endpoint: Quota bucket from the central policy table.
            collection_key: Collection to mutate locally.
            mutation: Local change to apply before the remote write.
            remote_write: Coroutine factory performing the persisted write.
            dependent_keys: Derived collections to invalidate after commit.
            compose: Forwarded to ``apply_optimistic``.

        Returns:
            A COMMITTED outcome, or a DENIED one with ``retry_after_seconds``.

        Raises:
            RemoteWriteError: The write failed; the cache was rolled back.
            InvariantViolationError: Cache protocol violated; nothing applied.
            UnknownEndpointError: ``endpoint`` has no quota policy.
        """
        # a mutation the cache would refuse must not use up a quota slot
        self._cache.check_can_apply(collection_key, compose=compose)

        decision = self._limiter.check_endpoint(actor_id, endpoint)
        if not decision.allowed:
            self._stats.denied += 1
            return MutationOutcome(
                state=MutationState.DENIED,
                collection_key=collection_key,
                retry_after_seconds=decision.retry_after_seconds,
            )

        pending = self._cache.apply_optimistic(collection_key, mutation, compose=compose)

        try:
            result = await remote_write()
        except asyncio.CancelledError:
            await self._resolve_rollback(collection_key, pending)
            raise
        except Exception as exc:
            await self._resolve_rollback(collection_key, pending)
            logger.warning(
                "sync.remote_write_failed",
                extra={
                    "collection_key": collection_key,
                    "endpoint": endpoint,
                    "error_type": type(exc).__name__,
                },
            )
            if isinstance(exc, RemoteWriteError):
                raise
            code = exc.code if isinstance(exc, AppError) else "remote_write_failed"
            raise RemoteWriteError(
                code=code,
                message=f"Remote write failed: {exc}",
                details={"collection_key": collection_key, "endpoint": endpoint},
            ) from exc

        released = self._cache.commit(collection_key, pending)
        needs_refetch = [collection_key] if released or self._supersede_reads(collection_key) else []
        self._stats.committed += 1

        for key in dependent_keys:
            # queued by the cache while that key has its own pending mutation
            if self._cache.invalidate(key, defer_if_pending=True) and key not in needs_refetch:
                needs_refetch.append(key)

        refetched, invalidated = await self._refetch_all(needs_refetch)
        logger.info(
            "sync.committed",
            extra={
                "collection_key": collection_key,
                "endpoint": endpoint,
                "refetched": list(refetched),
            },
        )
        return MutationOutcome(
            state=MutationState.COMMITTED,
            collection_key=collection_key,
            result=result,
            invalidated=invalidated,
            refetched=refetched,
        )

    async def update_record(
        self,
        actor_id: str,
        endpoint: str,
        request: MutationRequest,
        *,
        dependent_keys: Iterable[str] = (),
    ) -> MutationOutcome:
        """Optimistically merge ``request.changes`` into one tracked record."""
        tracked = self._require_tracked(request.collection_key)
        changes = dict(request.changes)
        return await self.mutate(
            actor_id,
            endpoint,
            request.collection_key,
            UpdateRecords(matches_id(request.target_id), merge_changes(changes)),
            lambda: self._store.write(tracked.table, request.target_id, changes, actor_id=actor_id),
            dependent_keys=dependent_keys,
        )

    async def insert_record(
        self,
        actor_id: str,
        endpoint: str,
        collection_key: str,
        record: Mapping[str, Any],
        *,
        dependent_keys: Iterable[str] = (),
    ) -> MutationOutcome:
        """Optimistically append a record; an id is assigned when missing."""
        tracked = self._require_tracked(collection_key)
        new_record = dict(record)
        new_record.setdefault("id", str(uuid.uuid4()))
        return await self.mutate(
            actor_id,
            endpoint,
            collection_key,
            InsertRecord(new_record),
            lambda: self._store.insert(tracked.table, new_record, actor_id=actor_id),
            dependent_keys=dependent_keys,
        )

    async def delete_record(
        self,
        actor_id: str,
        endpoint: str,
        collection_key: str,
        target_id: Any,
        *,
        dependent_keys: Iterable[str] = (),
    ) -> MutationOutcome:
        """Optimistically remove one record."""
        tracked = self._require_tracked(collection_key)
        return await self.mutate(
            actor_id,
            endpoint,
            collection_key,
            DeleteRecords(matches_id(target_id)),
            lambda: self._store.delete(tracked.table, target_id, actor_id=actor_id),
            dependent_keys=dependent_keys,
        )

    async def track(
        self,
        collection_key: str,
        table: str,
        filters: Mapping[str, Any] | None = None,
        *,
        change_filter: ChangeFilter | None = None,
    ) -> SubscriptionHandle:
        """Subscribe to changes for a collection, then fetch it.

        The subscription is established before the initial fetch so no
        change can fall between the two.
        """
        filters = dict(filters or {})
        if change_filter is None:
            change_filter = _default_change_filter(table, filters)

        tracked = self._tracked.get(collection_key)
        if tracked is None or tracked.table != table or tracked.filters != filters:
            tracked = _TrackedCollection(table=table, filters=filters)
            self._tracked[collection_key] = tracked

        tracked.handle = await self._listener.subscribe(
            collection_key,
            change_filter,
            ChangeHandlers(
                on_change=self._make_change_handler(collection_key),
                on_lost=self._make_lost_handler(collection_key),
            ),
        )
        tracked.lost = False
        await self.refetch(collection_key)
        return tracked.handle

    async def untrack(self, collection_key: str) -> None:
        """Stop listening for a collection and forget it unless a mutation is pending."""
        tracked = self._tracked.pop(collection_key, None)
        if tracked is None:
            return
        if tracked.handle is not None:
            await self._listener.unsubscribe(tracked.handle)
        if not self._cache.is_pending(collection_key):
            self._cache.drop(collection_key)

    def lost_keys(self) -> list[str]:
        """Tracked collections whose change channel was dropped."""
        return [key for key, tracked in self._tracked.items() if tracked.lost]

    async def reconcile(self, collection_key: str | None = None) -> list[str]:
        """Refetch one or every tracked collection.

        This is the compensating fetch for lost subscriptions (periodic or
        on focus). Lost channels are re-established first.
        """
        keys = [collection_key] if collection_key is not None else list(self._tracked)
        for key in keys:
            tracked = self._require_tracked(key)
            if tracked.lost:
                await self.track(key, tracked.table, tracked.filters)
            else:
                await self.refetch(key)
        return keys

    async def refetch(self, collection_key: str) -> None:
        """Read a tracked collection from the store and load it into the cache.

        Raises:
            AppError: The store read failed; the cache entry stays stale.
        """
        tracked = self._require_tracked(collection_key)
        tracked.generation += 1
        generation = tracked.generation
        tracked.reads_in_flight += 1
        try:
            records = await self._store.read(tracked.table, tracked.filters)
        finally:
            tracked.reads_in_flight -= 1
        if generation != tracked.generation:
            # superseded by a newer refetch or by a commit/rollback
            return
        self._cache.load(collection_key, records)

    async def close(self) -> None:
        """End the session: tear down every subscription."""
        await self._listener.close()
        self._tracked.clear()

    async def _resolve_rollback(self, collection_key: str, pending: PendingMutation) -> None:
        self._stats.rolled_back += 1
        released = self._cache.rollback(collection_key, pending)
        if released or self._supersede_reads(collection_key):
            await self._refetch_all([collection_key])

    def _supersede_reads(self, collection_key: str) -> bool:
        """Discard refetches that started before a mutation resolved.

        Such a read may predate the remote write, and the echo of our own
        write is skipped, so the caller must refetch again when this
        returns True.
        """
        tracked = self._tracked.get(collection_key)
        if tracked is None or not tracked.reads_in_flight:
            return False
        tracked.generation += 1
        logger.debug("sync.refetch_superseded", extra={"collection_key": collection_key})
        return True

    async def _refetch_all(self, keys: list[str]) -> tuple[tuple[str, ...], tuple[str, ...]]:
        refetched: list[str] = []
        invalidated: list[str] = []
        for key in keys:
            if key not in self._tracked:
                invalidated.append(key)
                continue
            try:
                await self.refetch(key)
            except AppError as exc:
                # entry stays stale; reconcile() retries
                self._stats.refetch_failures += 1
                logger.warning(
                    "sync.refetch_failed",
                    extra={"collection_key": key, "error_code": exc.code},
                )
                invalidated.append(key)
                continue
            refetched.append(key)
        return tuple(refetched), tuple(invalidated)

    def _make_change_handler(self, collection_key: str) -> Callable[[AnyChangeEvent], Awaitable[None]]:
        async def _on_change(event: AnyChangeEvent) -> None:
            if self._session_actor_id is not None and event.changed_by == self._session_actor_id:
                self._stats.own_echoes += 1
                return
            self._stats.remote_changes += 1
            logger.info(
                "sync.remote_change",
                extra={
                    "collection_key": collection_key,
                    "event_type": event.event_type,
                    "target_id": str(event.record_id),
                },
            )
            if self._cache.invalidate(collection_key) and collection_key in self._tracked:
                await self._refetch_all([collection_key])

        return _on_change

    def _make_lost_handler(self, collection_key: str) -> Callable[[SubscriptionLostError], None]:
        def _on_lost(error: SubscriptionLostError) -> None:
            tracked = self._tracked.get(collection_key)
            if tracked is not None:
                tracked.lost = True
            logger.warning(
                "sync.subscription_lost",
                extra={"collection_key": collection_key, "error_code": error.code},
            )

        return _on_lost

    def _require_tracked(self, collection_key: str) -> _TrackedCollection:
        tracked = self._tracked.get(collection_key)
        if tracked is None:
            raise ValidationAppError(
                code="collection_not_tracked",
                message=f"Collection '{collection_key}' is not tracked; call track() first",
                details={"collection_key": collection_key},
            )
        return tracked


def _default_change_filter(table: str, filters: Mapping[str, Any]) -> ChangeFilter:
    # change filters carry a single equality; wider collections listen table-wide
    if len(filters) == 1:
        ((column, value),) = filters.items()
        return ChangeFilter(table=table, column=column, value=value)
    return ChangeFilter(table=table)
