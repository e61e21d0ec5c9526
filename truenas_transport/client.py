"""Connection lifecycle for the TrueNAS middleware API.

This module provides the API the resource layer talks to:
- open the socket and log in before the connection is handed out
- ``call`` and ``call_job`` over the shared, multiplexed socket
- deterministic, idempotent ``close``

State machine:
    disconnected -> connecting -> authenticating -> ready -> closed

Any failure while connecting or authenticating goes straight to ``closed``,
as does a transport failure once ready. There is no reconnect; callers that
see a TransportError open a new client.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any

from .auth import INITIAL_BACKOFF, MAX_LOGIN_ATTEMPTS, authenticate
from .config import ClientConfig
from .correlator import DEFAULT_TIMEOUT, Correlator, NotificationSink
from .errors import ConnectionClosedError, TransportError, TrueNASClientError
from .jobs import call_job
from .ws_client import MiddlewareWsClient

_LOGGER = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Lifecycle states of a client connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSED = "closed"


class TrueNASClient:
    """Authenticated JSON-RPC client for one middleware endpoint.

    Usage:
        config = ClientConfig(host="nas.local", api_key="1-abc")
        async with TrueNASClient(config) as client:
            pools = await client.call("pool.query")
            pool = await client.call_job("pool.create", [params], timeout=900)
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        correlator_factory: Callable[..., Correlator] = Correlator,
        login_attempts: int = MAX_LOGIN_ATTEMPTS,
        login_backoff: float = INITIAL_BACKOFF,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self._correlator_factory = correlator_factory
        self._login_attempts = login_attempts
        self._login_backoff = login_backoff
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._correlator: Correlator | None = None
        self._teardown_task: asyncio.Task[None] | None = None
        self._sinks: list[NotificationSink] = []
        self._state_callback: Callable[[ConnectionState], None] | None = None

    @classmethod
    async def open(cls, config: ClientConfig, **kwargs: Any) -> TrueNASClient:
        """Create a client and connect it."""
        client = cls(config, **kwargs)
        await client.connect()
        return client

    async def __aenter__(self) -> TrueNASClient:
        if self._state is ConnectionState.DISCONNECTED:
            await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # Public API: Connection Management
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def label(self) -> str:
        return self.config.endpoint_url

    def on_state_changed(self, callback: Callable[[ConnectionState], None]) -> None:
        """Register callback for connection state changes."""
        self._state_callback = callback

    def add_notification_sink(self, sink: NotificationSink) -> None:
        """Register a callback for server-pushed notifications."""
        self._sinks.append(sink)
        if self._correlator is not None:
            self._correlator.add_notification_sink(sink)

    async def connect(self) -> None:
        """Open the socket and log in.

        Raises:
            ConfigError: Endpoint or credentials missing
            HandshakeError: WebSocket upgrade rejected
            TransportError: Socket could not be opened or failed during login
            CallTimeout: Connect or login timed out
            AuthenticationError: Login rejected
        """
        if self._state is not ConnectionState.DISCONNECTED:
            raise TrueNASClientError(
                f"Cannot connect a client in state {self._state.value}"
            )
        self.config.validate()
        url = self.label

        self._set_state(ConnectionState.CONNECTING)
        _LOGGER.info("[%s] Connecting", url)
        ws_client = MiddlewareWsClient()
        try:
            await ws_client.connect(
                url,
                insecure=self.config.insecure,
                ping_interval=self.config.ping_interval,
                timeout=self.config.connect_timeout,
            )
        except TrueNASClientError as err:
            _LOGGER.warning("[%s] Connection failed: %s", url, err)
            self._set_state(ConnectionState.CLOSED)
            raise

        correlator = self._correlator_factory(
            ws_client, label=url, default_timeout=self.config.call_timeout
        )
        for sink in self._sinks:
            correlator.add_notification_sink(sink)
        correlator.on_close(self._handle_transport_closed)
        self._correlator = correlator
        correlator.start()

        self._set_state(ConnectionState.AUTHENTICATING)
        try:
            await authenticate(
                correlator,
                self.config.credentials,
                max_attempts=self._login_attempts,
                initial_backoff=self._login_backoff,
                sleep=self._sleep,
                label=url,
            )
        except BaseException as err:
            _LOGGER.error("[%s] Authentication failed: %s", url, err)
            await correlator.close()
            self._set_state(ConnectionState.CLOSED)
            raise

        self._set_state(ConnectionState.READY)
        _LOGGER.info("[%s] Connected and authenticated", url)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._state is not ConnectionState.CLOSED:
            _LOGGER.info("[%s] Closing connection", self.label)
        self._set_state(ConnectionState.CLOSED)
        if self._correlator is not None:
            await self._correlator.close()
        if self._teardown_task is not None:
            await self._teardown_task
            self._teardown_task = None

    # -------------------------------------------------------------------------
    # Public API: Calls
    # -------------------------------------------------------------------------

    async def call(
        self,
        method: str,
        params: Sequence[Any] | None = None,
        *,
        timeout: float | None | object = DEFAULT_TIMEOUT,
        result_type: Callable[[Any], Any] | None = None,
    ) -> Any:
        """Call a middleware method and return its decoded result."""
        correlator = self._require_ready()
        return await correlator.call(
            method, params, timeout=timeout, result_type=result_type
        )

    async def call_job(
        self,
        method: str,
        params: Sequence[Any] | None = None,
        *,
        timeout: float | None | object = DEFAULT_TIMEOUT,
        result_type: Callable[[Any], Any] | None = None,
    ) -> Any:
        """Call a job method and return the finished job's result."""
        correlator = self._require_ready()
        return await call_job(
            correlator, method, params, timeout=timeout, result_type=result_type
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _require_ready(self) -> Correlator:
        if self._state is not ConnectionState.READY or self._correlator is None:
            raise ConnectionClosedError(
                f"Connection {self.label} is not ready ({self._state.value})"
            )
        return self._correlator

    def _set_state(self, state: ConnectionState) -> None:
        """Update connection state and notify callback."""
        if self._state is state:
            return
        _LOGGER.debug("[%s] State: %s → %s", self.label, self._state.value, state.value)
        self._state = state
        if self._state_callback:
            self._state_callback(state)

    def _handle_transport_closed(self, error: TransportError) -> None:
        if self._state is not ConnectionState.READY:
            return
        _LOGGER.warning("[%s] Connection lost: %s", self.label, error)
        self._set_state(ConnectionState.CLOSED)
        if self._correlator is not None:
            self._teardown_task = asyncio.get_running_loop().create_task(
                self._correlator.close()
            )
