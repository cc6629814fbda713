"""Encoding and decoding of the ``{t, d}`` socket envelopes."""

from __future__ import annotations

import json
from typing import Any, Iterable

from .types import Finish, OutboundEnvelope, RemoteEvent, SessionId, StateUpdate

HEARTBEAT_FRAME = "0"
KEEPALIVE_FRAME = "null"
START_WATCHING = "startWatching"


class DecodeError(Exception):
    pass


def encode_envelope(envelope: OutboundEnvelope) -> str:
    return json.dumps({"t": envelope.t, "d": envelope.d})


def start_watching(game_id: str) -> OutboundEnvelope:
    return OutboundEnvelope(t=START_WATCHING, d=game_id)


def start_watching_batch(ids: Iterable[str]) -> OutboundEnvelope:
    """Build one subscribe envelope covering a batch of games.

    Every id is followed by a single space, trailing space included, even
    for a batch of one.
    """

    payload = "".join(f"{game_id} " for game_id in ids)
    if not payload:
        raise ValueError("at least one game id is required")
    return OutboundEnvelope(t=START_WATCHING, d=payload)


def _require_str(body: dict[str, Any], key: str, tag: str) -> str:
    value = body.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"{tag}: field {key!r} must be a string")
    return value


def _require_int(body: dict[str, Any], key: str, tag: str) -> int:
    value = body.get(key)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise DecodeError(f"{tag}: field {key!r} must be a non-negative integer")
    return value


def _decode_finish(body: dict[str, Any]) -> Finish:
    win = body.get("win")
    if win is not None and not isinstance(win, str):
        raise DecodeError("finish: field 'win' must be a string")
    return Finish(id=SessionId(_require_str(body, "id", "finish")), result=win)


def _decode_fen(body: dict[str, Any]) -> StateUpdate:
    return StateUpdate(
        id=SessionId(_require_str(body, "id", "fen")),
        last_move=_require_str(body, "lm", "fen"),
        state=_require_str(body, "fen", "fen"),
        clock_white=_require_int(body, "wc", "fen"),
        clock_black=_require_int(body, "bc", "fen"),
    )


_DECODERS = {
    "finish": _decode_finish,
    "fen": _decode_fen,
}


def decode_frame(text: str) -> RemoteEvent | None:
    """Decode one inbound text frame.

    Returns ``None`` for the ``"0"`` heartbeat. Raises :class:`DecodeError`
    for anything that is not a known tagged event.
    """

    if text == HEARTBEAT_FRAME:
        return None
    try:
        frame = json.loads(text)
    except ValueError as exc:
        raise DecodeError(f"malformed json frame: {text[:80]!r}") from exc
    if not isinstance(frame, dict):
        raise DecodeError("frame must be a json object")
    tag = frame.get("t")
    if not isinstance(tag, str):
        raise DecodeError("frame is missing its 't' tag")
    decoder = _DECODERS.get(tag.lower())
    if decoder is None:
        raise DecodeError(f"unknown frame type: {tag}")
    body = frame.get("d")
    if not isinstance(body, dict):
        raise DecodeError(f"{tag}: payload 'd' must be an object")
    return decoder(body)
