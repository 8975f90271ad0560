"""Socket transports for the realtime channel.

A transport opens one authenticated connection; the channel owns retries.
Every failure, on open or while connected, is raised as `ChannelError`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from carelink.errors import ChannelError

logger = logging.getLogger(__name__)

AUTH_EVENT = "auth"


def encode_frame(event: str, data: Any) -> str:
    return json.dumps({"event": event, "data": data}, default=str)


def decode_frame(raw: str | bytes) -> tuple[str, Any]:
    """Parse `{"event": str, "data": any}`. Raises ValueError on anything else."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    frame = json.loads(raw)
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        raise ValueError("frame is not an {event, data} object")
    return frame["event"], frame.get("data")


class Connection(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self, url: str, token: str) -> Connection: ...


class WebSocketConnection:
    def __init__(self, ws: Any) -> None:
        self._ws = ws

    async def send(self, message: str) -> None:
        try:
            await self._ws.send(message)
        except WebSocketException as exc:
            raise ChannelError(f"Send failed: {exc}") from exc

    async def recv(self) -> str | bytes:
        try:
            return await self._ws.recv()
        except ConnectionClosed as exc:
            raise ChannelError(f"Connection closed: {exc}") from exc
        except WebSocketException as exc:
            raise ChannelError(f"Receive failed: {exc}") from exc

    async def close(self) -> None:
        await self._ws.close()


class WebSocketTransport:
    def __init__(self, open_timeout: float = 10.0) -> None:
        self._open_timeout = open_timeout

    async def open(self, url: str, token: str) -> WebSocketConnection:
        try:
            ws = await websockets.connect(url, open_timeout=self._open_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise ChannelError(f"Could not connect to {url}: {exc}") from exc

        connection = WebSocketConnection(ws)
        try:
            await connection.send(encode_frame(AUTH_EVENT, {"token": token}))
        except ChannelError:
            await connection.close()
            raise
        return connection
