"""Change-event source interface.

A source delivers ``ChangeEvent``s matching a ``ChangeFilter`` to a callback,
in the order it emits them, until the channel is closed. There is no replay:
events emitted before ``open`` returns may be missed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from gradesync.schemas.events import ChangeFilter, DeleteEvent, InsertEvent, UpdateEvent

AnyChangeEvent = InsertEvent | UpdateEvent | DeleteEvent
Deliver = Callable[[AnyChangeEvent], Awaitable[None]]
OnClosed = Callable[[str], Awaitable[None]]


class AbstractChangeSource(ABC):
    """Interface for push-based change sources."""

    @abstractmethod
    async def open(
        self,
        change_filter: ChangeFilter,
        deliver: Deliver,
        *,
        on_closed: OnClosed | None = None,
    ) -> str:
        """Open a channel and return its id once the handshake completes.

        Args:
            change_filter: Events to deliver.
            deliver: Awaited for each event; the next event waits for it.
            on_closed: Awaited with a reason if the source drops the channel.
                Not called for channels closed through ``close``.
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self, channel_id: str) -> None:
        """Close a channel. Must be idempotent."""
        raise NotImplementedError
