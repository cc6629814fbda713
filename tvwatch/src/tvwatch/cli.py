"""Command-line entry point that streams watch-set events as JSON lines."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, TextIO

import aiohttp

from .codec import DecodeError
from .config import GameCategory, WatcherConfig
from .connection import TransportError
from .coordinator import WatchSetCoordinator
from .directory import DirectoryClient, DirectoryError, GameInfo
from .publisher import DownstreamPublisher
from .types import DownstreamEvent, Finish, StateUpdate, WatchSetUpdated

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def event_to_json(event: DownstreamEvent) -> dict[str, Any]:
    if isinstance(event, WatchSetUpdated):
        return {"t": "games", "d": list(event.games)}
    inner = event.event
    if isinstance(inner, StateUpdate):
        return {
            "t": "fen",
            "d": {
                "id": inner.id,
                "lm": inner.last_move,
                "fen": inner.state,
                "wc": inner.clock_white,
                "bc": inner.clock_black,
            },
        }
    if isinstance(inner, Finish):
        return {"t": "finish", "d": {"id": inner.id, "win": inner.result}}
    raise TypeError(f"unsupported event: {event!r}")


def game_to_json(game: GameInfo) -> dict[str, Any]:
    players: dict[str, Any] = {}
    for colour, player in (("white", game.white), ("black", game.black)):
        if player is not None:
            players[colour] = {"name": player.name, "title": player.title, "rating": player.rating}
    return {"id": game.id, "speed": game.speed, "players": players}


def _write_line(output: TextIO, payload: dict[str, Any]) -> None:
    output.write(json.dumps(payload) + "\n")
    output.flush()


async def consume(publisher: DownstreamPublisher, output: TextIO, max_events: int | None = None) -> None:
    written = 0
    async for event in publisher:
        _write_line(output, event_to_json(event))
        written += 1
        if max_events is not None and written >= max_events:
            return


def _drain_nowait(publisher: DownstreamPublisher, output: TextIO) -> None:
    while True:
        try:
            event = publisher.get_nowait()
        except asyncio.QueueEmpty:
            return
        _write_line(output, event_to_json(event))


async def watch(config: WatcherConfig, output: TextIO, *, max_events: int | None = None) -> int:
    publisher = DownstreamPublisher(config.publish_capacity)
    async with aiohttp.ClientSession() as http:
        try:
            coordinator = await WatchSetCoordinator.create(http, config, publisher)
        except TransportError as exc:
            logger.error("could not open stream: %s", exc)
            return 1
        consumer = asyncio.create_task(consume(publisher, output, max_events))
        try:
            await coordinator.start_watching_current_games()
            if config.target_count is not None and coordinator.watched_games:
                await coordinator.pump_replacements_until_count(config.target_count)
            runner = asyncio.create_task(
                coordinator.run_forever() if config.reconnect else coordinator.run()
            )
            done, _ = await asyncio.wait({runner, consumer}, return_when=asyncio.FIRST_COMPLETED)
            if runner in done:
                runner.result()
            else:
                runner.cancel()
                await asyncio.gather(runner, return_exceptions=True)
                consumer.result()
        except (TransportError, DecodeError, DirectoryError) as exc:
            logger.error("watch stopped: %s", exc)
            return 1
        except OSError as exc:
            logger.error("could not write events: %s", exc)
            return 1
        finally:
            await coordinator.aclose()
            if not consumer.done():
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)
                _drain_nowait(publisher, output)
    return 0


async def list_games(config: WatcherConfig, output: TextIO) -> int:
    async with aiohttp.ClientSession() as http:
        directory = DirectoryClient(http, api_url=config.api_url, site_url=config.site_url)
        try:
            games = await directory.fetch_live_games(config.category, config.initial_count)
        except DirectoryError as exc:
            logger.error("could not list games: %s", exc)
            return 1
    for game in games:
        _write_line(output, game_to_json(game))
    return 0


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    defaults = WatcherConfig()
    parser.add_argument(
        "--category",
        choices=[category.value for category in GameCategory],
        default=defaults.category.value,
        help="TV channel to watch",
    )
    parser.add_argument("--count", type=int, default=defaults.initial_count, help="Games in the initial snapshot")
    parser.add_argument("--api-url", default=defaults.api_url, help="Base URL of the JSON API")
    parser.add_argument("--site-url", default=defaults.site_url, help="Base URL for replacement lookups")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Watch rotating live games and stream their events")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        default="WARNING",
        help="Logging level written to stderr",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser("watch", help="Stream watch-set and game events as JSON lines")
    _add_common_arguments(watch_parser)
    defaults = WatcherConfig()
    watch_parser.add_argument("--socket-url", default=defaults.socket_url, help="Base URL of the event socket")
    watch_parser.add_argument("--target", type=int, default=None, help="Fetch replacements until this many games")
    watch_parser.add_argument(
        "--replacement-delay",
        type=float,
        default=defaults.replacement_delay_s,
        help="Seconds to wait after a game finishes before replacing it",
    )
    watch_parser.add_argument(
        "--keepalive",
        type=float,
        default=defaults.keepalive_interval_s,
        help="Seconds between keepalive messages",
    )
    watch_parser.add_argument("--reconnect", action="store_true", help="Reconnect with backoff when the stream drops")
    watch_parser.add_argument("--max-events", type=int, default=None, help="Stop after writing this many events")

    list_parser = subparsers.add_parser("list", help="Print the current live games")
    _add_common_arguments(list_parser)
    return parser


def config_from_args(args: argparse.Namespace) -> WatcherConfig:
    options: dict[str, Any] = {
        "api_url": args.api_url,
        "site_url": args.site_url,
        "category": GameCategory(args.category),
        "initial_count": args.count,
    }
    if args.command == "watch":
        options.update(
            socket_url=args.socket_url,
            target_count=args.target,
            replacement_delay_s=args.replacement_delay,
            keepalive_interval_s=args.keepalive,
            reconnect=args.reconnect,
        )
    return WatcherConfig(**options)


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        config = config_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    logging.basicConfig(
        level=args.log_level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    stream = output or sys.stdout
    if args.command == "list":
        return asyncio.run(list_games(config, stream))
    return asyncio.run(watch(config, stream, max_events=args.max_events))


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
