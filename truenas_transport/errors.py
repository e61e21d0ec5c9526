"""Client error types for TrueNAS middleware interactions."""

from __future__ import annotations

import json
from typing import Any


class TrueNASClientError(Exception):
    """Base error for TrueNAS client failures."""


class TransportError(TrueNASClientError):
    """Reading from or writing to the socket failed.

    Terminal for the connection: every pending call sees it.
    """


class ConnectionClosedError(TransportError):
    """The connection is closed and can no longer carry calls."""


class HandshakeError(TransportError):
    """WebSocket handshake failed."""


class DecodeError(TrueNASClientError):
    """An inbound envelope or result could not be decoded."""


class CallTimeout(TrueNASClientError, TimeoutError):
    """Caller deadline expired before the response arrived."""


class AuthenticationError(TrueNASClientError):
    """Login was rejected or the rate-limit retry budget ran out."""


class ConfigError(TrueNASClientError):
    """Client configuration is missing or invalid."""


class ProtocolError(TrueNASClientError):
    """Error object reported by the server in a response envelope."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        self.code = code
        self.message = message
        self.data = data
        super().__init__(self._render())

    def _render(self) -> str:
        if self.data is None:
            return f"JSON-RPC error {self.code}: {self.message}"
        try:
            data = json.dumps(self.data)
        except (TypeError, ValueError):
            data = repr(self.data)
        return f"JSON-RPC error {self.code}: {self.message} (data: {data})"
