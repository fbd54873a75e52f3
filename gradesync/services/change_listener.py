"""Change-notification listener.

Keeps at most one live channel per collection key and routes each incoming
event to exactly one handler, chosen from the event's type. A catch-all
``on_change`` handler wins over the per-type ones. Lost channels are not
reconnected; the caller reconciles with a fresh fetch.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from gradesync.adapters.events.base import AbstractChangeSource, AnyChangeEvent
from gradesync.core.errors import SubscriptionLostError
from gradesync.schemas.events import ChangeFilter

logger = logging.getLogger(__name__)

Handler = Callable[[AnyChangeEvent], Awaitable[None] | None]
LostHandler = Callable[[SubscriptionLostError], Awaitable[None] | None]


async def _call(handler: Callable[[Any], Awaitable[None] | None], arg: Any) -> None:
    result = handler(arg)
    if inspect.isawaitable(result):
        await result


@dataclass(frozen=True)
class ChangeHandlers:
    """Callbacks for one subscription.

    Attributes:
        on_insert: Called for INSERT events.
        on_update: Called for UPDATE events.
        on_delete: Called for DELETE events.
        on_change: Catch-all; when set, the per-type handlers are ignored.
        on_lost: Called once if the source drops the channel.
    """

    on_insert: Handler | None = None
    on_update: Handler | None = None
    on_delete: Handler | None = None
    on_change: Handler | None = None
    on_lost: LostHandler | None = None

    def resolve(self, event: AnyChangeEvent) -> Handler | None:
        if self.on_change is not None:
            return self.on_change
        by_type = {
            "INSERT": self.on_insert,
            "UPDATE": self.on_update,
            "DELETE": self.on_delete,
        }
        return by_type[event.event_type]


@dataclass(eq=False)
class SubscriptionHandle:
    """Caller-facing token for a subscription."""

    collection_key: str
    change_filter: ChangeFilter
    channel_id: str
    active: bool = True
    lost: bool = False


@dataclass(eq=False)
class _Subscription:
    handle: SubscriptionHandle
    handlers: ChangeHandlers
    delivered: int = 0
    teardowns: int = 0


class ChangeListener:
    """Subscribes collections to a change source and dispatches events."""

    def __init__(self, source: AbstractChangeSource) -> None:
        self._source = source
        self._subscriptions: dict[str, _Subscription] = {}
        self._lock = asyncio.Lock()

    def subscription(self, collection_key: str) -> SubscriptionHandle | None:
        sub = self._subscriptions.get(collection_key)
        return sub.handle if sub else None

    @property
    def active_keys(self) -> list[str]:
        return list(self._subscriptions)

    async def subscribe(
        self,
        collection_key: str,
        change_filter: ChangeFilter,
        handlers: ChangeHandlers,
    ) -> SubscriptionHandle:
        """Ensure one live channel for ``collection_key`` with ``change_filter``.

        Re-subscribing with the same filter keeps the channel and replaces
        the handlers; a different filter tears the old channel down first.
        Events emitted before this returns may be missed.
        """
        async with self._lock:
            existing = self._subscriptions.get(collection_key)
            if existing is not None:
                if existing.handle.change_filter == change_filter:
                    existing.handlers = handlers
                    return existing.handle
                await self._teardown(existing)

            handle = SubscriptionHandle(
                collection_key=collection_key,
                change_filter=change_filter,
                channel_id="",
            )
            sub = _Subscription(handle=handle, handlers=handlers)
            handle.channel_id = await self._source.open(
                change_filter,
                self._make_deliver(sub),
                on_closed=self._make_on_closed(sub),
            )
            self._subscriptions[collection_key] = sub

        logger.info(
            "listener.subscribed",
            extra={
                "collection_key": collection_key,
                "table": change_filter.table,
                "channel_id": handle.channel_id,
            },
        )
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop delivery for ``handle``. Safe to call repeatedly."""
        if not handle.active:
            return
        async with self._lock:
            sub = self._subscriptions.get(handle.collection_key)
            if sub is not None and sub.handle is handle:
                await self._teardown(sub)
            else:
                # channel already replaced or lost
                handle.active = False

    async def close(self) -> None:
        """Tear down every subscription (end of the session)."""
        async with self._lock:
            for sub in list(self._subscriptions.values()):
                await self._teardown(sub)

    async def _teardown(self, sub: _Subscription) -> None:
        handle = sub.handle
        # takes effect before the source is even told
        handle.active = False
        if self._subscriptions.get(handle.collection_key) is sub:
            del self._subscriptions[handle.collection_key]
        sub.teardowns += 1
        await self._source.close(handle.channel_id)
        logger.info(
            "listener.unsubscribed",
            extra={"collection_key": handle.collection_key, "channel_id": handle.channel_id},
        )

    def _make_deliver(self, sub: _Subscription) -> Callable[[AnyChangeEvent], Awaitable[None]]:
        async def _deliver(event: AnyChangeEvent) -> None:
            if not sub.handle.active:
                return
            handler = sub.handlers.resolve(event)
            if handler is None:
                return
            sub.delivered += 1
            await _call(handler, event)

        return _deliver

    def _make_on_closed(self, sub: _Subscription) -> Callable[[str], Awaitable[None]]:
        async def _on_closed(reason: str) -> None:
            handle = sub.handle
            if not handle.active:
                return
            handle.active = False
            handle.lost = True
            if self._subscriptions.get(handle.collection_key) is sub:
                del self._subscriptions[handle.collection_key]
            logger.warning(
                "listener.subscription_lost",
                extra={"collection_key": handle.collection_key, "reason": reason},
            )
            if sub.handlers.on_lost is not None:
                error = SubscriptionLostError(
                    code="subscription_lost",
                    message=f"Change channel for '{handle.collection_key}' closed: {reason}",
                    details={"collection_key": handle.collection_key},
                )
                await _call(sub.handlers.on_lost, error)

        return _on_closed
