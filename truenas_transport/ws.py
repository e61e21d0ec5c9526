"""WebSocket helpers for the TrueNAS middleware endpoint."""

from __future__ import annotations

import asyncio
import ssl
from urllib.parse import urlsplit

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)

from .errors import (
    CallTimeout,
    HandshakeError,
    TransportError,
)


def build_ssl_context(insecure: bool) -> ssl.SSLContext:
    """Return a client TLS context, with verification off when ``insecure``."""
    context = ssl.create_default_context()
    if insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def connect_websocket(
    url: str,
    *,
    insecure: bool = False,
    ping_interval: int | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to a middleware WebSocket endpoint.

    Args:
        url: ``ws://`` or ``wss://`` URL including the API path
        insecure: Skip certificate verification for ``wss://`` URLs
        ping_interval: Interval for keepalive ping frames
        timeout: Connection and handshake timeout
    """
    kwargs = {}
    if urlsplit(url).scheme == "wss":
        kwargs["ssl"] = build_ssl_context(insecure)
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
                **kwargs,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise CallTimeout(f"WebSocket connection to {url} timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise HandshakeError(f"WebSocket handshake with {url} failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise TransportError(f"WebSocket connection to {url} failed: {err}") from err
