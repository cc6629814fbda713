"""The watch-set coordinator and its multiplexed event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

import aiohttp

from .codec import decode_frame, start_watching, start_watching_batch
from .config import WatcherConfig
from .connection import SessionConnection, TransportError, generate_sri, socket_url
from .directory import DirectoryClient, DirectoryError
from .publisher import DownstreamPublisher
from .scheduler import ReplacementScheduler
from .types import Finish, ReplaceGame, SessionId, StateUpdate, WatcherCommand

logger = logging.getLogger(__name__)

Connector = Callable[[], Awaitable[SessionConnection]]


class WatchSetCoordinator:
    """Owns the stream connection and the ordered list of watched games.

    Only this object mutates the watch set. Replacement timers reach it
    through the command queue; the rendering side only ever sees copies
    published on the downstream queue.
    """

    def __init__(
        self,
        connection: SessionConnection,
        directory: DirectoryClient,
        publisher: DownstreamPublisher | None = None,
        *,
        config: WatcherConfig | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.config = config or WatcherConfig()
        self.publisher = publisher or DownstreamPublisher(self.config.publish_capacity)
        self._connection = connection
        self._directory = directory
        self._connector = connector
        self._watch_set: List[SessionId] = []
        self._commands: asyncio.Queue[WatcherCommand] = asyncio.Queue()
        self.scheduler = ReplacementScheduler(self._commands, self.config.replacement_delay_s)

    @classmethod
    async def create(
        cls,
        http: aiohttp.ClientSession,
        config: WatcherConfig | None = None,
        publisher: DownstreamPublisher | None = None,
    ) -> "WatchSetCoordinator":
        config = config or WatcherConfig()

        async def connect() -> SessionConnection:
            return await SessionConnection.connect(http, socket_url(config.socket_url, generate_sri()))

        directory = DirectoryClient(http, api_url=config.api_url, site_url=config.site_url)
        connection = await connect()
        return cls(connection, directory, publisher, config=config, connector=connect)

    @property
    def watched_games(self) -> list[SessionId]:
        return list(self._watch_set)

    @property
    def commands(self) -> asyncio.Queue[WatcherCommand]:
        return self._commands

    async def _publish_watch_set(self) -> None:
        await self.publisher.publish_watch_set(self._watch_set)

    async def start_watching_one(self, game_id: SessionId) -> None:
        await self._connection.send(start_watching(game_id))
        self._watch_set.append(game_id)
        logger.info("watching %s (%d games)", game_id, len(self._watch_set))
        await self._publish_watch_set()

    async def start_watching_one_instead(self, new_id: SessionId, old_id: SessionId) -> None:
        """Swap ``old_id`` for ``new_id`` in place.

        Only the first occurrence is replaced. When ``old_id`` is not watched
        nothing is sent, but the current snapshot is still published.
        """

        for index, game_id in enumerate(self._watch_set):
            if game_id == old_id:
                await self._connection.send(start_watching(new_id))
                self._watch_set[index] = new_id
                logger.info("replaced %s with %s at slot %d", old_id, new_id, index)
                break
        else:
            logger.info("replacement target %s is not watched", old_id)
        await self._publish_watch_set()

    async def start_watching_current_games(self) -> None:
        games = await self._directory.fetch_live_game_ids(self.config.category, self.config.initial_count)
        if games:
            await self._connection.send(start_watching_batch(games))
            self._watch_set.extend(games)
            logger.info("watching %d current %s games", len(games), self.config.category.value)
        else:
            logger.warning("directory returned no live %s games", self.config.category.value)
        await self._publish_watch_set()

    async def pump_replacements_until_count(self, target: int) -> None:
        if not self._watch_set:
            raise ValueError("cannot fetch replacements without at least one watched game")
        while len(self._watch_set) < target:
            new_id = await self._directory.fetch_replacement(
                self.config.category, self._watch_set[0], list(self._watch_set)
            )
            await self.start_watching_one(new_id)

    async def _handle_message(self, text: str) -> None:
        event = decode_frame(text)
        if event is None:
            return
        if isinstance(event, Finish):
            logger.info("game %s finished (%s)", event.id, event.result or "no result")
            self.scheduler.schedule(event.id)
        elif isinstance(event, StateUpdate):
            logger.debug("game %s moved %s", event.id, event.last_move)
        await self.publisher.publish_session_event(event)

    async def _handle_command(self, command: WatcherCommand) -> None:
        if isinstance(command, ReplaceGame):
            await self._replace_game(command)

    async def _replace_game(self, command: ReplaceGame) -> None:
        try:
            new_id = await self._directory.fetch_replacement(
                self.config.category, command.id, list(self._watch_set)
            )
        except DirectoryError as exc:
            if command.attempt >= self.config.max_replacement_attempts:
                logger.error(
                    "giving up replacing %s after %d attempts: %s", command.id, command.attempt, exc
                )
                return
            logger.warning("replacement fetch for %s failed (attempt %d): %s", command.id, command.attempt, exc)
            self.scheduler.schedule(command.id, attempt=command.attempt + 1)
            return
        try:
            await self.start_watching_one_instead(new_id, command.id)
        except TransportError:
            # The slot is untouched; retry the swap once the stream is back.
            self._commands.put_nowait(command)
            raise

    async def run(self) -> None:
        """Service inbound frames, commands and keepalives until a fatal error.

        Each iteration handles exactly one source. ``TransportError`` and
        ``DecodeError`` propagate to the caller.
        """

        loop = asyncio.get_running_loop()
        interval = self.config.keepalive_interval_s
        next_keepalive = loop.time() + interval
        receive_task: Optional[asyncio.Future] = None
        command_task: Optional[asyncio.Future] = None
        try:
            while True:
                if loop.time() >= next_keepalive:
                    await self._connection.send_keepalive()
                    next_keepalive = loop.time() + interval
                    continue
                if receive_task is None:
                    receive_task = asyncio.ensure_future(self._connection.receive_next())
                if command_task is None:
                    command_task = asyncio.ensure_future(self._commands.get())
                await asyncio.wait(
                    {receive_task, command_task},
                    timeout=max(0.0, next_keepalive - loop.time()),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if receive_task.done():
                    text = receive_task.result()
                    receive_task = None
                    await self._handle_message(text)
                elif command_task.done():
                    command = command_task.result()
                    command_task = None
                    await self._handle_command(command)
        finally:
            pending = [task for task in (receive_task, command_task) if task is not None]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            if command_task is not None and not command_task.cancelled() and command_task.exception() is None:
                # Dequeued but never handled; keep it for the next run.
                self._commands.put_nowait(command_task.result())

    async def _reconnect(self) -> None:
        await self._connection.close()
        attempt = 0
        while True:
            attempt += 1
            delay = self.config.reconnect_delay(attempt)
            logger.info("reconnecting in %.1fs (attempt %d)", delay, attempt)
            await asyncio.sleep(delay)
            try:
                self._connection = await self._connector()
                if self._watch_set:
                    await self._connection.send(start_watching_batch(self._watch_set))
            except TransportError as exc:
                await self._connection.close()
                max_attempts = self.config.reconnect_max_attempts
                if max_attempts is not None and attempt >= max_attempts:
                    raise
                logger.warning("reconnect attempt %d failed: %s", attempt, exc)
                continue
            break
        logger.info("reconnected, resubscribed %d games", len(self._watch_set))

    async def run_forever(self) -> None:
        """Like :meth:`run`, reconnecting after transport failures when enabled."""

        while True:
            try:
                await self.run()
            except TransportError as exc:
                if not self.config.reconnect or self._connector is None:
                    raise
                logger.warning("stream lost: %s", exc)
                await self._reconnect()

    async def aclose(self) -> None:
        await self.scheduler.cancel_all()
        await self._connection.close()
