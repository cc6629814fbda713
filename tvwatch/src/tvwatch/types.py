from __future__ import annotations

from dataclasses import dataclass
from typing import NewType, Optional, Tuple, Union

SessionId = NewType("SessionId", str)


@dataclass(frozen=True)
class Finish:
    """A watched game has ended."""

    id: SessionId
    result: Optional[str] = None


@dataclass(frozen=True)
class StateUpdate:
    """A watched game advanced by one move."""

    id: SessionId
    last_move: str
    state: str
    clock_white: int
    clock_black: int


RemoteEvent = Union[Finish, StateUpdate]


@dataclass(frozen=True)
class OutboundEnvelope:
    t: str
    d: str


@dataclass(frozen=True)
class ReplaceGame:
    """Internal request to swap a finished game for a fresh one."""

    id: SessionId
    attempt: int = 1


WatcherCommand = ReplaceGame


@dataclass(frozen=True)
class WatchSetUpdated:
    games: Tuple[SessionId, ...]


@dataclass(frozen=True)
class SessionEvent:
    event: RemoteEvent


DownstreamEvent = Union[WatchSetUpdated, SessionEvent]
