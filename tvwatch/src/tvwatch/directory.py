"""HTTP client for the live game directory."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

import aiohttp

from .config import GameCategory
from .types import SessionId

logger = logging.getLogger(__name__)


class DirectoryError(Exception):
    pass


@dataclass(frozen=True)
class Player:
    name: Optional[str]
    user_id: Optional[str]
    rating: Optional[int]
    title: Optional[str] = None
    flair: Optional[str] = None


@dataclass(frozen=True)
class Clock:
    initial: int
    increment: int
    total_time: int


@dataclass(frozen=True)
class GameInfo:
    id: SessionId
    rated: bool = False
    variant: Optional[str] = None
    speed: Optional[str] = None
    perf: Optional[str] = None
    created_at: Optional[int] = None
    last_move_at: Optional[int] = None
    status: Optional[str] = None
    white: Optional[Player] = None
    black: Optional[Player] = None
    moves: str = ""
    clock: Optional[Clock] = None


def _parse_player(raw: Any) -> Player | None:
    if not isinstance(raw, dict):
        return None
    user = raw.get("user") if isinstance(raw.get("user"), dict) else {}
    rating = raw.get("rating")
    return Player(
        name=user.get("name"),
        user_id=user.get("id"),
        rating=rating if isinstance(rating, int) else None,
        title=user.get("title"),
        flair=user.get("flair"),
    )


def _parse_clock(raw: Any) -> Clock | None:
    if not isinstance(raw, dict):
        return None
    try:
        return Clock(
            initial=int(raw["initial"]),
            increment=int(raw["increment"]),
            total_time=int(raw["totalTime"]),
        )
    except (KeyError, TypeError, ValueError):
        return None


def parse_game_info(record: Any) -> GameInfo:
    """Build a :class:`GameInfo` from one NDJSON record; only ``id`` is mandatory."""

    if not isinstance(record, dict) or not isinstance(record.get("id"), str):
        raise DirectoryError("game record is missing its id")
    players = record.get("players") if isinstance(record.get("players"), dict) else {}
    return GameInfo(
        id=SessionId(record["id"]),
        rated=bool(record.get("rated", False)),
        variant=record.get("variant"),
        speed=record.get("speed"),
        perf=record.get("perf"),
        created_at=record.get("createdAt"),
        last_move_at=record.get("lastMoveAt"),
        status=record.get("status"),
        white=_parse_player(players.get("white")),
        black=_parse_player(players.get("black")),
        moves=record.get("moves") or "",
        clock=_parse_clock(record.get("clock")),
    )


class DirectoryClient:
    """Fetches live games and replacement games over HTTP."""

    def __init__(
        self,
        http: aiohttp.ClientSession,
        *,
        api_url: str = "https://lichess.org/api",
        site_url: str = "https://lichess.org",
    ) -> None:
        self._http = http
        self._api_url = api_url.rstrip("/")
        self._site_url = site_url.rstrip("/")

    async def _get_text(self, url: str, *, params: Any, accept: str) -> str:
        try:
            async with self._http.get(url, params=params, headers={"Accept": accept}) as response:
                if response.status != 200:
                    raise DirectoryError(f"GET {url} returned HTTP {response.status}")
                return await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise DirectoryError(f"GET {url} failed: {exc}") from exc

    async def fetch_live_games(self, category: GameCategory, nb: int = 30) -> list[GameInfo]:
        url = f"{self._api_url}/tv/{GameCategory(category).value}"
        text = await self._get_text(url, params={"nb": str(nb)}, accept="application/x-ndjson")
        games: list[GameInfo] = []
        for line in text.split("\n"):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except ValueError as exc:
                raise DirectoryError(f"malformed game record: {line[:80]!r}") from exc
            games.append(parse_game_info(record))
        logger.debug("fetched %d live %s games", len(games), GameCategory(category).value)
        return games

    async def fetch_live_game_ids(self, category: GameCategory, nb: int = 30) -> list[SessionId]:
        return [game.id for game in await self.fetch_live_games(category, nb)]

    async def fetch_replacement(
        self,
        category: GameCategory,
        for_id: SessionId,
        exclude: Iterable[SessionId],
    ) -> SessionId:
        url = f"{self._site_url}/games/{GameCategory(category).value}/replacement/{for_id}"
        params = [("exclude", game_id) for game_id in exclude]
        text = await self._get_text(url, params=params, accept="application/json")
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise DirectoryError("malformed replacement response") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("id"), str):
            raise DirectoryError("replacement response is missing its id")
        return SessionId(payload["id"])
