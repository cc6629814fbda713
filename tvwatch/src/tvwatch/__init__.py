"""Live watch-set coordinator for rotating game streams."""

from .codec import DecodeError, decode_frame, encode_envelope, start_watching, start_watching_batch
from .config import GameCategory, WatcherConfig
from .connection import ConnectionClosedError, SessionConnection, TransportError
from .coordinator import WatchSetCoordinator
from .directory import DirectoryClient, DirectoryError, GameInfo
from .publisher import DownstreamPublisher
from .scheduler import ReplacementScheduler
from .types import (
    Finish,
    OutboundEnvelope,
    ReplaceGame,
    SessionEvent,
    SessionId,
    StateUpdate,
    WatchSetUpdated,
)

__all__ = [
    "ConnectionClosedError",
    "DecodeError",
    "DirectoryClient",
    "DirectoryError",
    "DownstreamPublisher",
    "Finish",
    "GameCategory",
    "GameInfo",
    "OutboundEnvelope",
    "ReplaceGame",
    "ReplacementScheduler",
    "SessionConnection",
    "SessionEvent",
    "SessionId",
    "StateUpdate",
    "TransportError",
    "WatchSetCoordinator",
    "WatchSetUpdated",
    "WatcherConfig",
    "decode_frame",
    "encode_envelope",
    "start_watching",
    "start_watching_batch",
]
