"""Request/response correlation over a single middleware socket.

A :class:`Correlator` owns the socket after construction. One background
reader task is the only consumer of inbound frames; it completes the future
registered for each request id and hands id-less envelopes to the
notification sinks. Writers share an ``asyncio.Lock`` so frames go out whole
and one at a time.

Responses whose id is not pending (unknown, already answered, or abandoned
after a timeout) are logged and dropped. They never fail the connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Final

from .codec import (
    Notification,
    Response,
    convert_result,
    decode_envelope,
    encode_request,
    peek_id,
)
from .errors import (
    CallTimeout,
    ConnectionClosedError,
    DecodeError,
    TransportError,
)
from .ws_client import MiddlewareWsClient, WsMessage, WsMessageType

_LOGGER = logging.getLogger(__name__)

# Sentinel for "use the correlator's default timeout"
DEFAULT_TIMEOUT: Final = object()

NotificationSink = Callable[[Notification], Awaitable[None] | None]
CloseCallback = Callable[[TransportError], None]


class Correlator:
    """Multiplex concurrent JSON-RPC calls over one socket.

    Usage:
        correlator = Correlator(ws_client, label="wss://nas/api/current")
        correlator.start()
        pools = await correlator.call("pool.query")
        await correlator.close()
    """

    def __init__(
        self,
        ws: MiddlewareWsClient,
        *,
        label: str = "",
        default_timeout: float | None = None,
    ) -> None:
        self._ws = ws
        self._label = label
        self._default_timeout = default_timeout

        self._next_id = 1
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._write_lock = asyncio.Lock()

        self._reader_task: asyncio.Task[None] | None = None
        self._closed = False
        self._close_error: TransportError | None = None
        self._ws_closed = False

        self._sinks: list[NotificationSink] = []
        self._sink_tasks: set[asyncio.Task[Any]] = set()
        self._close_callbacks: list[CloseCallback] = []

        self.unexpected_count = 0

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def close_error(self) -> TransportError | None:
        """The error that closed the correlator, if any."""
        return self._close_error

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start the reader task. Calling it twice is harmless."""
        if self._reader_task is None and not self._closed:
            self._reader_task = asyncio.create_task(
                self._read_loop(), name=f"truenas-reader {self._label}"
            )

    def add_notification_sink(self, sink: NotificationSink) -> None:
        """Register a callback for id-less envelopes.

        Sinks run on the reader; coroutine sinks are scheduled as tasks so
        a slow sink cannot stall response delivery.
        """
        self._sinks.append(sink)

    def remove_notification_sink(self, sink: NotificationSink) -> None:
        with contextlib.suppress(ValueError):
            self._sinks.remove(sink)

    def on_close(self, callback: CloseCallback) -> None:
        """Register a callback run once when the correlator closes."""
        self._close_callbacks.append(callback)

    async def call(
        self,
        method: str,
        params: Sequence[Any] | None = None,
        *,
        timeout: float | None | object = DEFAULT_TIMEOUT,
        result_type: Callable[[Any], Any] | None = None,
    ) -> Any:
        """Issue one request and wait for its own response.

        Args:
            method: Middleware method name, e.g. ``"pool.query"``
            params: Positional parameters, omitted from the frame when None
            timeout: Seconds to wait; None waits forever
            result_type: Optional converter for the raw result

        Raises:
            ConnectionClosedError: The correlator is already closed
            TransportError: The socket failed while the call was in flight
            ProtocolError: The server answered with an error object
            DecodeError: The response or its result could not be decoded
            CallTimeout: The deadline expired
        """
        self._check_open()
        self.start()
        timeout = self._resolve_timeout(timeout)
        request_id, future = self._register()
        # The deadline also covers the write lock and the send
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline:
                frame = encode_request(request_id, method, params)
                await self._send(request_id, method, frame)
                raw = await future
        except TimeoutError as err:
            if not deadline.expired():
                raise
            raise self._timed_out(method, request_id, timeout) from err
        finally:
            self._discard(request_id, future)
        return convert_result(raw, result_type)

    async def close(self, error: TransportError | None = None) -> None:
        """Stop reading, fail pending calls and close the socket. Idempotent."""
        self._fail(error or ConnectionClosedError(f"Connection {self._label} closed"))
        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        sink_tasks = [t for t in self._sink_tasks if t is not asyncio.current_task()]
        for sink_task in sink_tasks:
            sink_task.cancel()
        if sink_tasks:
            await asyncio.gather(*sink_tasks, return_exceptions=True)
        await self._close_ws()

    # -------------------------------------------------------------------------
    # Internal: request side
    # -------------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise ConnectionClosedError(
                f"Connection {self._label} is closed"
            ) from self._close_error

    def _register(self) -> tuple[int, asyncio.Future[Any]]:
        request_id = self._next_id
        self._next_id += 1
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return request_id, future

    def _discard(self, request_id: int, future: asyncio.Future[Any]) -> None:
        self._pending.pop(request_id, None)
        if not future.done():
            future.cancel()
        elif not future.cancelled():
            # Mark as retrieved; the caller already raised the same error
            future.exception()

    async def _send(self, request_id: int, method: str, frame: str) -> None:
        async with self._write_lock:
            self._check_open()
            _LOGGER.debug("[%s] -> %s (id=%d)", self._label, method, request_id)
            try:
                await self._ws.send_text(frame)
            except TransportError as err:
                _LOGGER.error(
                    "[%s] Failed to send %s (id=%d): %s",
                    self._label,
                    method,
                    request_id,
                    err,
                )
                self._fail(err)
                raise

    def _resolve_timeout(self, timeout: float | None | object) -> float | None:
        if timeout is DEFAULT_TIMEOUT:
            return self._default_timeout
        return timeout  # type: ignore[return-value]

    def _timed_out(
        self, method: str, request_id: int | None, timeout: float | None
    ) -> CallTimeout:
        _LOGGER.warning(
            "[%s] %s (id=%s) timed out after %ss",
            self._label,
            method,
            request_id,
            timeout,
        )
        return CallTimeout(f"{method} (id={request_id}) timed out after {timeout}s")

    # -------------------------------------------------------------------------
    # Internal: response side
    # -------------------------------------------------------------------------

    async def _read_loop(self) -> None:
        """Demultiplex inbound frames until the socket goes away."""
        message_count = 0
        try:
            async for msg in self._ws:
                message_count += 1
                if not self._dispatch(msg):
                    break
        except asyncio.CancelledError:
            _LOGGER.debug(
                "[%s] Reader cancelled (%d messages)", self._label, message_count
            )
            raise
        except TransportError as err:
            self._fail(err)
        except Exception as err:
            _LOGGER.exception("[%s] Unexpected reader error: %s", self._label, err)
            self._fail(self._transport_error("Reader failed", err))
        finally:
            if not self._closed:
                self._fail(TransportError(f"Connection {self._label} stopped reading"))

    def _dispatch(self, msg: WsMessage) -> bool:
        """Route one normalized frame. Returns False when reading must stop."""
        if msg.type is WsMessageType.CLOSED:
            _LOGGER.info("[%s] WebSocket closed by server", self._label)
            self._fail(self._transport_error("WebSocket closed by server", msg.data))
            return False

        if msg.type is WsMessageType.ERROR:
            _LOGGER.error("[%s] WebSocket error: %s", self._label, msg.data)
            self._fail(self._transport_error("WebSocket read failed", msg.data))
            return False

        try:
            envelope = decode_envelope(msg.data)
        except DecodeError as err:
            self._handle_malformed(msg.data, err)
            return True

        if isinstance(envelope, Notification):
            self._notify(envelope)
        else:
            self._resolve(envelope)
        return True

    def _resolve(self, response: Response) -> None:
        future = self._pending.pop(response.id, None)
        if future is None or future.done():
            self.unexpected_count += 1
            _LOGGER.warning(
                "[%s] Unexpected response id=%d, discarding",
                self._label,
                response.id,
            )
            return

        if response.error is not None:
            future.set_exception(response.error.to_exception())
        else:
            future.set_result(response.result)

    def _handle_malformed(self, raw: Any, err: DecodeError) -> None:
        request_id = peek_id(raw) if isinstance(raw, (str, bytes)) else None
        future = self._pending.pop(request_id, None) if request_id is not None else None
        if future is None or future.done():
            _LOGGER.warning("[%s] Discarding malformed frame: %s", self._label, err)
            return
        future.set_exception(err)

    def _notify(self, notification: Notification) -> None:
        _LOGGER.debug("[%s] Notification: %s", self._label, notification.method)
        for sink in list(self._sinks):
            try:
                result = sink(notification)
            except Exception as err:
                _LOGGER.exception(
                    "[%s] Notification sink error: %s", self._label, err
                )
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._sink_tasks.add(task)
                task.add_done_callback(self._sink_done)

    def _sink_done(self, task: asyncio.Task[Any]) -> None:
        self._sink_tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            _LOGGER.error("[%s] Notification sink error: %s", self._label, err)

    # -------------------------------------------------------------------------
    # Internal: teardown
    # -------------------------------------------------------------------------

    def _transport_error(self, message: str, cause: Any) -> TransportError:
        error = TransportError(f"{message} ({self._label})")
        if isinstance(cause, BaseException):
            error.__cause__ = cause
        return error

    def _fail(self, error: TransportError) -> None:
        """Close the correlator and fail every pending call with ``error``."""
        if self._closed:
            return
        self._closed = True
        self._close_error = error

        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

        task = self._reader_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()

        for callback in self._close_callbacks:
            try:
                callback(error)
            except Exception as err:
                _LOGGER.exception("[%s] Close callback error: %s", self._label, err)

    async def _close_ws(self) -> None:
        if self._ws_closed:
            return
        self._ws_closed = True
        try:
            await asyncio.wait_for(self._ws.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self._label)


class LockstepCorrelator(Correlator):
    """Correlator that serializes whole round trips behind one lock.

    There is no reader task: the caller holding the lock writes its request
    and reads frames inline until its own response arrives. Only one call is
    ever in flight, so concurrent callers wait on each other. Use it for
    deliberately single-caller conversations such as the installer.

    A timeout interrupts the inline read and leaves the stream unusable, so
    it closes the connection.
    """

    def __init__(
        self,
        ws: MiddlewareWsClient,
        *,
        label: str = "",
        default_timeout: float | None = None,
    ) -> None:
        super().__init__(ws, label=label, default_timeout=default_timeout)
        self._call_lock = asyncio.Lock()
        self._messages: Any = None

    def start(self) -> None:
        if self._messages is None and not self._closed:
            self._messages = aiter(self._ws)

    async def call(
        self,
        method: str,
        params: Sequence[Any] | None = None,
        *,
        timeout: float | None | object = DEFAULT_TIMEOUT,
        result_type: Callable[[Any], Any] | None = None,
    ) -> Any:
        timeout = self._resolve_timeout(timeout)
        request_id: int | None = None
        reading = False
        # The deadline also covers the call lock and the send
        deadline = asyncio.timeout(timeout)
        try:
            async with deadline, self._call_lock:
                self._check_open()
                self.start()
                request_id, future = self._register()
                try:
                    frame = encode_request(request_id, method, params)
                    await self._send(request_id, method, frame)
                    reading = True
                    await self._read_until(future)
                    raw = future.result()
                finally:
                    self._discard(request_id, future)
        except TimeoutError as err:
            if not deadline.expired():
                raise
            if reading:
                self._fail(
                    TransportError(f"Read for {method} timed out ({self._label})")
                )
            raise self._timed_out(method, request_id, timeout) from err
        return convert_result(raw, result_type)

    async def _read_until(self, future: asyncio.Future[Any]) -> None:
        while not future.done():
            try:
                msg = await anext(self._messages)
            except StopAsyncIteration:
                self._fail(TransportError(f"WebSocket ended ({self._label})"))
                break
            self._dispatch(msg)
