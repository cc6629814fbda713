from __future__ import annotations

import asyncio
import logging
import random
import string

import aiohttp
from aiohttp import WSMsgType

from .codec import KEEPALIVE_FRAME, encode_envelope
from .types import OutboundEnvelope

logger = logging.getLogger(__name__)

_SRI_ALPHABET = string.ascii_letters + string.digits


class TransportError(Exception):
    pass


class ConnectionClosedError(TransportError):
    pass


def generate_sri(length: int = 12) -> str:
    """Random alphanumeric client token; only needs to be unique, not secret."""

    return "".join(random.choice(_SRI_ALPHABET) for _ in range(length))


def socket_url(base_url: str, sri: str) -> str:
    return f"{base_url.rstrip('/')}/socket/v5?sri={sri}"


class SessionConnection:
    """One persistent websocket to the game stream."""

    def __init__(self, ws: aiohttp.ClientWebSocketResponse, url: str) -> None:
        self._ws = ws
        self.url = url

    @classmethod
    async def connect(cls, http: aiohttp.ClientSession, url: str) -> "SessionConnection":
        try:
            ws = await http.ws_connect(url, autoping=True)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(f"connect to {url} failed: {exc}") from exc
        logger.info("connected to %s", url)
        return cls(ws, url)

    async def _send_str(self, data: str) -> None:
        if self._ws.closed:
            raise ConnectionClosedError("websocket is closed")
        try:
            await self._ws.send_str(data)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise TransportError(f"send failed: {exc}") from exc
        logger.debug("sent %s", data)

    async def send(self, envelope: OutboundEnvelope) -> None:
        await self._send_str(encode_envelope(envelope))

    async def send_keepalive(self) -> None:
        await self._send_str(KEEPALIVE_FRAME)

    async def receive_next(self) -> str:
        """Wait for the next text frame.

        Close frames and end of stream raise :class:`ConnectionClosedError`;
        binary and error frames raise :class:`TransportError`.
        """

        msg = await self._ws.receive()
        if msg.type == WSMsgType.TEXT:
            logger.debug("received %s", msg.data)
            return msg.data
        if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED}:
            raise ConnectionClosedError(f"websocket closed (code={self._ws.close_code})")
        if msg.type == WSMsgType.ERROR:
            raise TransportError(f"websocket error: {self._ws.exception()}")
        raise TransportError(f"unsupported frame type: {msg.type.name}")

    async def close(self) -> None:
        if not self._ws.closed:
            await self._ws.close()
