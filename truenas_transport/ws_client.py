"""WebSocket client wrapper for the TrueNAS middleware socket."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.exceptions import ConnectionClosed, WebSocketException

from .errors import ConnectionClosedError, TransportError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from websockets.asyncio.client import ClientConnection


class WsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class WsMessage:
    """Normalized WebSocket message payload.

    ``data`` holds the frame text for TEXT messages and the causing exception
    for CLOSED/ERROR messages, when there is one.
    """

    type: WsMessageType
    data: Any = None


class MiddlewareWsClient:
    """Wrapper around a websockets connection to the middleware."""

    def __init__(self, ws: ClientConnection | None = None) -> None:
        self._ws = ws

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        insecure: bool = False,
        ping_interval: int | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the middleware websocket."""
        self._ws = await connect_websocket(
            url,
            insecure=insecure,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_text(self, text: str) -> None:
        """Send one text frame."""
        if self._ws is None:
            raise ConnectionClosedError("WebSocket is not connected")
        try:
            await self._ws.send(text)
        except ConnectionClosed as err:
            raise TransportError(f"WebSocket closed while sending: {err}") from err
        except (OSError, WebSocketException) as err:
            raise TransportError(f"WebSocket send failed: {err}") from err

    def __aiter__(self) -> AsyncIterator[WsMessage]:
        if self._ws is None:
            raise ConnectionClosedError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[WsMessage]:
        if self._ws is None:
            raise ConnectionClosedError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                normalized = self._normalize_message(msg)
                if normalized is None:
                    continue
                yield normalized
        except ConnectionClosed as err:
            yield WsMessage(type=WsMessageType.CLOSED, data=err)
        except Exception as err:
            yield WsMessage(type=WsMessageType.ERROR, data=err)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield WsMessage(type=WsMessageType.CLOSED)

    @staticmethod
    def _normalize_message(msg: Any) -> WsMessage | None:
        """Normalize a received frame into a WsMessage."""
        if isinstance(msg, (bytes, bytearray)):
            try:
                return WsMessage(WsMessageType.TEXT, bytes(msg).decode("utf-8"))
            except UnicodeDecodeError:
                # Binary frames are not part of the middleware protocol
                return None
        if isinstance(msg, str):
            return WsMessage(WsMessageType.TEXT, msg)
        return WsMessage(WsMessageType.TEXT, str(msg))
