"""In-process change feed.

- One asyncio queue and pump task per channel, so each subscriber sees
  events in publish order and a slow subscriber never blocks the publisher.
- ``publish`` must run on the event loop thread that opened the channels.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field

from gradesync.adapters.events.base import AbstractChangeSource, AnyChangeEvent, Deliver, OnClosed
from gradesync.schemas.events import ChangeFilter

logger = logging.getLogger(__name__)


@dataclass
class _Channel:
    channel_id: str
    change_filter: ChangeFilter
    deliver: Deliver
    on_closed: OnClosed | None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None
    closed: bool = False


class InMemoryChangeFeed(AbstractChangeSource):
    """Pub/sub feed keyed by channel id, filtering per subscriber."""

    def __init__(self) -> None:
        self._channels: dict[str, _Channel] = {}

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    async def open(
        self,
        change_filter: ChangeFilter,
        deliver: Deliver,
        *,
        on_closed: OnClosed | None = None,
    ) -> str:
        channel = _Channel(
            channel_id=f"{change_filter.table}-{uuid.uuid4().hex[:12]}",
            change_filter=change_filter,
            deliver=deliver,
            on_closed=on_closed,
        )
        channel.task = asyncio.create_task(self._pump(channel), name=f"change-feed:{channel.channel_id}")
        self._channels[channel.channel_id] = channel
        logger.debug(
            "change_feed.opened",
            extra={"channel_id": channel.channel_id, "table": change_filter.table},
        )
        return channel.channel_id

    async def close(self, channel_id: str) -> None:
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return
        await self._shutdown(channel)
        logger.debug("change_feed.closed", extra={"channel_id": channel_id})

    async def drop(self, channel_id: str, reason: str = "connection_lost") -> None:
        """Simulate the transport losing a channel; notifies ``on_closed``."""
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return
        await self._shutdown(channel)
        logger.warning("change_feed.dropped", extra={"channel_id": channel_id, "reason": reason})
        if channel.on_closed is not None:
            await channel.on_closed(reason)

    def publish(self, event: AnyChangeEvent) -> int:
        """Queue ``event`` for every matching channel.

        Returns:
            Number of channels the event was queued for.
        """
        delivered = 0
        for channel in list(self._channels.values()):
            if channel.closed or not channel.change_filter.matches(event):
                continue
            channel.queue.put_nowait(event.model_copy(update={"filter_match": True}))
            delivered += 1
        logger.debug(
            "change_feed.published",
            extra={"table": event.table, "event_type": event.event_type, "channels": delivered},
        )
        return delivered

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        await asyncio.gather(*(c.queue.join() for c in list(self._channels.values())))

    async def aclose(self) -> None:
        for channel_id in list(self._channels):
            await self.close(channel_id)

    async def _pump(self, channel: _Channel) -> None:
        while not channel.closed:
            event = await channel.queue.get()
            try:
                if not channel.closed:
                    await channel.deliver(event)
            except Exception:
                logger.exception(
                    "change_feed.deliver_failed",
                    extra={"channel_id": channel.channel_id, "event_type": event.event_type},
                )
            finally:
                channel.queue.task_done()

    async def _shutdown(self, channel: _Channel) -> None:
        channel.closed = True
        # release anyone waiting in drain()
        while not channel.queue.empty():
            channel.queue.get_nowait()
            channel.queue.task_done()

        task = channel.task
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            # closed from inside a handler; the pump exits after this delivery
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
