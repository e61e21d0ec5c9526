"""JSON-RPC 2.0 envelope encoding and decoding for the middleware socket.

Three inbound shapes are distinguished:
- success response: integer ``id``, no ``error``
- error response: integer ``id`` and an ``error`` object
- notification: ``id`` absent or null

Results are left as decoded JSON values; callers convert them to the type
they expect with :func:`convert_result`.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from .errors import DecodeError, ProtocolError

JSONRPC_VERSION = "2.0"

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RPCErrorObject:
    """Server-reported error carried by an error response."""

    code: int
    message: str
    data: Any = None

    def to_exception(self) -> ProtocolError:
        return ProtocolError(self.code, self.message, self.data)


@dataclass(frozen=True, slots=True)
class Response:
    """Response envelope correlated to a request by ``id``."""

    id: int
    result: Any = None
    error: RPCErrorObject | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True, slots=True)
class Notification:
    """Server-pushed envelope without an ``id``."""

    method: str | None = None
    params: Any = None


def build_request(
    request_id: int,
    method: str,
    params: Sequence[Any] | None = None,
) -> dict[str, Any]:
    """Build a request envelope dict.

    ``params`` is omitted entirely when ``None``; any other sequence is sent
    as a positional list.
    """
    request: dict[str, Any] = {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "method": method,
    }
    if params is not None:
        if isinstance(params, (str, bytes)):
            raise TypeError("params must be a sequence of positional arguments")
        request["params"] = list(params)
    return request


def encode_request(
    request_id: int,
    method: str,
    params: Sequence[Any] | None = None,
) -> str:
    """Encode a request envelope as wire text."""
    return json.dumps(build_request(request_id, method, params))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def peek_id(raw: str | bytes) -> int | None:
    """Best-effort extraction of an integer ``id`` from a frame.

    Used to attribute a malformed frame to the call that is waiting on it.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict) and _is_int(data.get("id")):
        return data["id"]
    return None


def _decode_error(value: Any) -> RPCErrorObject:
    if not isinstance(value, dict):
        raise DecodeError(f"error member is not an object: {value!r}")
    code = value.get("code")
    if not _is_int(code):
        raise DecodeError(f"error object has no integer code: {value!r}")
    message = value.get("message", "")
    if not isinstance(message, str):
        message = str(message)
    return RPCErrorObject(code=code, message=message, data=value.get("data"))


def decode_envelope(raw: str | bytes) -> Response | Notification:
    """Decode one inbound frame.

    Raises:
        DecodeError: The frame is not a well-formed envelope.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as err:
            raise DecodeError("frame is not valid UTF-8") from err

    try:
        data = json.loads(raw)
    except ValueError as err:
        raise DecodeError(f"frame is not valid JSON: {err}") from err

    if not isinstance(data, dict):
        raise DecodeError(f"envelope is not an object: {type(data).__name__}")

    request_id = data.get("id")
    if request_id is None:
        method = data.get("method")
        return Notification(
            method=method if isinstance(method, str) else None,
            params=data.get("params"),
        )

    if not _is_int(request_id):
        raise DecodeError(f"envelope id is not an integer: {request_id!r}")

    if "error" in data and data["error"] is not None:
        return Response(id=request_id, error=_decode_error(data["error"]))

    if "result" not in data:
        raise DecodeError(f"response {request_id} has neither result nor error")

    return Response(id=request_id, result=data["result"])


def convert_result(value: Any, result_type: Callable[[Any], T] | None) -> T | Any:
    """Interpret a raw result with ``result_type``.

    ``None`` returns the raw value. For ``int`` and ``bool`` the raw value must
    already have that JSON type; other converters are called with the value.
    """
    if result_type is None:
        return value
    if result_type is bool:
        if not isinstance(value, bool):
            raise DecodeError(f"expected boolean result, got {value!r}")
        return value
    if result_type is int:
        if not _is_int(value):
            raise DecodeError(f"expected integer result, got {value!r}")
        return value
    try:
        return result_type(value)
    except (TypeError, ValueError) as err:
        raise DecodeError(f"cannot interpret result {value!r}: {err}") from err
