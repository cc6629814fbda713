from __future__ import annotations

import asyncio
import logging
from typing import Set

from .types import ReplaceGame, SessionId, WatcherCommand

logger = logging.getLogger(__name__)


class ReplacementScheduler:
    """Enqueues ``ReplaceGame`` commands after a cool-down.

    Timers only talk to the coordinator through ``commands``. They are
    tracked so shutdown can cancel whatever is still sleeping.
    """

    def __init__(self, commands: asyncio.Queue[WatcherCommand], delay_s: float = 3.0) -> None:
        self._commands = commands
        self.delay_s = delay_s
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, game_id: SessionId, *, attempt: int = 1) -> asyncio.Task:
        task = asyncio.create_task(self._fire(ReplaceGame(id=game_id, attempt=attempt)))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("replacement for %s scheduled in %.1fs (attempt %d)", game_id, self.delay_s, attempt)
        return task

    async def _fire(self, command: ReplaceGame) -> None:
        await asyncio.sleep(self.delay_s)
        await self._commands.put(command)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
