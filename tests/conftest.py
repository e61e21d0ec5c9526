"""Pytest configuration and fixtures for truenas_transport tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Iterable
from typing import Any

import pytest
import pytest_asyncio
from websockets.exceptions import ConnectionClosedError

from truenas_transport.correlator import Correlator
from truenas_transport.ws_client import MiddlewareWsClient

_END = object()

Responder = Callable[[dict[str, Any]], Iterable[Any] | None]


class FakeWebSocket:
    """Scripted stand-in for a websockets ClientConnection.

    Outbound frames are decoded and recorded in ``sent``. Inbound frames are
    queued with ``push``; an optional ``responder`` is called with each
    request and may return frames to queue in reply. Setting ``send_gate``
    stalls every write until the event is set.
    """

    def __init__(self, responder: Responder | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.responder = responder
        self.send_error: Exception | None = None
        self.send_gate: asyncio.Event | None = None
        self.closed = False
        self._inbound: asyncio.Queue[Any] = asyncio.Queue()

    async def send(self, text: str) -> None:
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error is not None:
            raise self.send_error
        request = json.loads(text)
        self.sent.append(request)
        if self.responder is not None:
            for frame in self.responder(request) or ():
                self.push(frame)

    def push(self, frame: Any) -> None:
        """Queue an inbound frame; dicts are JSON-encoded."""
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self._inbound.put_nowait(frame)

    def drop(self, error: BaseException | None = None) -> None:
        """Simulate the server dropping the connection."""
        self._inbound.put_nowait(error or ConnectionClosedError(None, None))

    async def close(self) -> None:
        self.closed = True
        self._inbound.put_nowait(_END)

    def methods(self) -> list[str]:
        return [request["method"] for request in self.sent]

    def __aiter__(self) -> FakeWebSocket:
        return self

    async def __anext__(self) -> Any:
        item = await self._inbound.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


def result(request_id: int, value: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": value}


def error(
    request_id: int, code: int, message: str, data: Any = None
) -> dict[str, Any]:
    err: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": err}


def notification(method: str, params: Any = None) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "method": method, "params": params or {}}


def echo_responder(request: dict[str, Any]) -> list[dict[str, Any]]:
    """Answer every request with its own method name."""
    return [result(request["id"], request["method"])]


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def fake_ws() -> FakeWebSocket:
    """Create a scripted WebSocket with no responder."""
    return FakeWebSocket()


@pytest_asyncio.fixture
async def correlator(fake_ws: FakeWebSocket):
    """Create a started correlator over ``fake_ws``."""
    rpc = Correlator(MiddlewareWsClient(fake_ws), label="test")
    rpc.start()
    yield rpc
    await rpc.close()
