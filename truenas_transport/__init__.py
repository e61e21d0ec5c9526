"""Asyncio JSON-RPC transport for the TrueNAS middleware WebSocket API."""

__version__ = "0.1.0"

from .auth import ApiKeyCredentials, PasswordCredentials, authenticate
from .cache import ClientCache, ClientLease
from .client import ConnectionState, TrueNASClient
from .codec import (
    Notification,
    Response,
    RPCErrorObject,
    decode_envelope,
    encode_request,
)
from .config import ClientConfig
from .correlator import DEFAULT_TIMEOUT, Correlator, LockstepCorrelator
from .errors import (
    AuthenticationError,
    CallTimeout,
    ConfigError,
    ConnectionClosedError,
    DecodeError,
    HandshakeError,
    ProtocolError,
    TransportError,
    TrueNASClientError,
)
from .jobs import JOB_WAIT_METHOD, call_job
from .ws import connect_websocket
from .ws_client import MiddlewareWsClient, WsMessage, WsMessageType

__all__ = [
    "DEFAULT_TIMEOUT",
    "JOB_WAIT_METHOD",
    "ApiKeyCredentials",
    "AuthenticationError",
    "CallTimeout",
    "ClientCache",
    "ClientConfig",
    "ClientLease",
    "ConfigError",
    "ConnectionClosedError",
    "ConnectionState",
    "Correlator",
    "DecodeError",
    "HandshakeError",
    "LockstepCorrelator",
    "MiddlewareWsClient",
    "Notification",
    "PasswordCredentials",
    "ProtocolError",
    "RPCErrorObject",
    "Response",
    "TransportError",
    "TrueNASClient",
    "TrueNASClientError",
    "WsMessage",
    "WsMessageType",
    "__version__",
    "authenticate",
    "call_job",
    "connect_websocket",
    "decode_envelope",
    "encode_request",
]
