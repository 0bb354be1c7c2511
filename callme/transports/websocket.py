"""FastAPI/Starlette WebSocket transport.

Wraps the WebSocket accepted by the carrier app's media endpoint in the
:class:`BaseTransport` interface.
"""

from __future__ import annotations

from fastapi import WebSocket
from loguru import logger
from starlette.websockets import WebSocketDisconnect, WebSocketState

from callme.transports.base import BaseTransport, TransportClosed


class FastAPIWebSocketTransport(BaseTransport):
    """Adapter to make FastAPI's WebSocket work with CallMe's transport interface."""

    def __init__(self, ws: WebSocket) -> None:
        self._ws = ws
        self._connected = True

    async def send(self, data: bytes | str) -> None:
        if not self._connected:
            raise TransportClosed("WebSocket is closed")
        try:
            if isinstance(data, bytes):
                await self._ws.send_bytes(data)
            else:
                await self._ws.send_text(data)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._connected = False
            raise TransportClosed(str(e)) from e

    async def recv(self) -> bytes | str:
        if not self._connected:
            raise TransportClosed("WebSocket is closed")
        try:
            msg = await self._ws.receive()
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._connected = False
            raise TransportClosed(str(e)) from e

        if msg.get("type") == "websocket.disconnect":
            self._connected = False
            raise TransportClosed(f"WebSocket disconnected (code={msg.get('code')})")
        if msg.get("text") is not None:
            return msg["text"]
        if msg.get("bytes") is not None:
            return msg["bytes"]
        raise TransportClosed(f"Unexpected WebSocket message type: {msg.get('type')}")

    async def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        if self._ws.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close()
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug(f"WebSocket already closed: {e}")

    def is_connected(self) -> bool:
        return self._connected
