from __future__ import annotations

import asyncio
from typing import AsyncIterator, Iterable

from .types import DownstreamEvent, RemoteEvent, SessionEvent, SessionId, WatchSetUpdated


class DownstreamPublisher:
    """Bounded single-producer queue feeding the rendering side.

    ``publish`` waits for space instead of dropping, so a slow consumer
    stalls the producer.
    """

    def __init__(self, capacity: int = 100) -> None:
        self._queue: asyncio.Queue[DownstreamEvent] = asyncio.Queue(maxsize=capacity)

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    def qsize(self) -> int:
        return self._queue.qsize()

    async def publish(self, event: DownstreamEvent) -> None:
        await self._queue.put(event)

    async def publish_watch_set(self, games: Iterable[SessionId]) -> None:
        await self.publish(WatchSetUpdated(games=tuple(games)))

    async def publish_session_event(self, event: RemoteEvent) -> None:
        await self.publish(SessionEvent(event=event))

    async def get(self) -> DownstreamEvent:
        return await self._queue.get()

    def get_nowait(self) -> DownstreamEvent:
        return self._queue.get_nowait()

    async def __aiter__(self) -> AsyncIterator[DownstreamEvent]:
        while True:
            yield await self._queue.get()
