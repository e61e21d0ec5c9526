"""Tests for MiddlewareWsClient and connect_websocket."""

from __future__ import annotations

import ssl
from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import ConnectionClosed, InvalidURI

from truenas_transport.errors import (
    CallTimeout,
    ConnectionClosedError,
    HandshakeError,
    TransportError,
)
from truenas_transport.ws import build_ssl_context, connect_websocket
from truenas_transport.ws_client import (
    MiddlewareWsClient,
    WsMessage,
    WsMessageType,
)

URL = "wss://nas.local/api/current"


class AsyncIteratorMock:
    """Helper class to create a proper async iterator mock."""

    def __init__(self, items: list, *, raise_on_iter: Exception | None = None):
        self._items = items
        self._index = 0
        self._raise_on_iter = raise_on_iter
        self.close = AsyncMock()
        self.send = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._items):
            if self._raise_on_iter is not None:
                raise self._raise_on_iter
            raise StopAsyncIteration
        item = self._items[self._index]
        self._index += 1
        return item


class TestWsMessage:
    """Tests for WsMessage dataclass."""

    def test_enum_values(self):
        """Test enum has expected values."""
        assert WsMessageType.TEXT.value == "text"
        assert WsMessageType.CLOSED.value == "closed"
        assert WsMessageType.ERROR.value == "error"

    def test_message_is_frozen(self):
        """Test that messages are immutable."""
        msg = WsMessage(type=WsMessageType.TEXT, data="test")
        with pytest.raises(AttributeError):
            msg.data = "modified"  # type: ignore[misc]


class TestMiddlewareWsClientConnect:
    """Tests for MiddlewareWsClient.connect()."""

    @pytest.mark.asyncio
    async def test_connect_success(self):
        """Test successful WebSocket connection."""
        mock_ws = AsyncMock()

        with patch(
            "truenas_transport.ws_client.connect_websocket",
            return_value=mock_ws,
        ) as mock_connect:
            client = MiddlewareWsClient()
            await client.connect(URL, insecure=True)

            mock_connect.assert_called_once_with(
                URL,
                insecure=True,
                ping_interval=20,
                timeout=15.0,
            )
            assert client.connected

    @pytest.mark.asyncio
    async def test_connect_propagates_errors(self):
        """Test that connection errors are propagated."""
        with patch(
            "truenas_transport.ws_client.connect_websocket",
            side_effect=TransportError("Connection failed"),
        ):
            client = MiddlewareWsClient()
            with pytest.raises(TransportError, match="Connection failed"):
                await client.connect(URL)
            assert not client.connected

    @pytest.mark.asyncio
    async def test_close_not_connected(self):
        """Test closing when not connected (no error)."""
        client = MiddlewareWsClient()
        await client.close()


class TestMiddlewareWsClientSend:
    """Tests for MiddlewareWsClient.send_text()."""

    @pytest.mark.asyncio
    async def test_send_text(self):
        """Test sending a text frame."""
        mock_ws = AsyncMock()
        client = MiddlewareWsClient(mock_ws)
        await client.send_text('{"id": 1}')
        mock_ws.send.assert_awaited_once_with('{"id": 1}')

    @pytest.mark.asyncio
    async def test_send_not_connected(self):
        """Test send raises when not connected."""
        client = MiddlewareWsClient()
        with pytest.raises(ConnectionClosedError, match="not connected"):
            await client.send_text("{}")

    @pytest.mark.asyncio
    async def test_send_on_closed_socket(self):
        """Test a closed socket surfaces as TransportError."""
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = ConnectionClosed(None, None)
        client = MiddlewareWsClient(mock_ws)
        with pytest.raises(TransportError, match="closed while sending"):
            await client.send_text("{}")

    @pytest.mark.asyncio
    async def test_send_os_error(self):
        """Test socket errors surface as TransportError."""
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = OSError("broken pipe")
        client = MiddlewareWsClient(mock_ws)
        with pytest.raises(TransportError, match="broken pipe"):
            await client.send_text("{}")


class TestMiddlewareWsClientIteration:
    """Tests for MiddlewareWsClient async iteration."""

    def test_iter_not_connected(self):
        """Test iteration raises when not connected."""
        client = MiddlewareWsClient()
        with pytest.raises(ConnectionClosedError, match="not connected"):
            aiter(client)

    @pytest.mark.asyncio
    async def test_iter_graceful_close(self):
        """Test iteration emits CLOSED on graceful completion."""
        client = MiddlewareWsClient(AsyncIteratorMock(["hello"]))

        messages = [msg async for msg in client]

        assert len(messages) == 2
        assert messages[0] == WsMessage(WsMessageType.TEXT, "hello")
        assert messages[1].type == WsMessageType.CLOSED

    @pytest.mark.asyncio
    async def test_iter_connection_closed(self):
        """Test iteration handles ConnectionClosed."""
        closed = ConnectionClosed(None, None)
        client = MiddlewareWsClient(AsyncIteratorMock(["a"], raise_on_iter=closed))

        messages = [msg async for msg in client]

        assert [m.type for m in messages] == [WsMessageType.TEXT, WsMessageType.CLOSED]
        assert messages[1].data is closed

    @pytest.mark.asyncio
    async def test_iter_unexpected_error(self):
        """Test iteration handles unexpected errors."""
        err = RuntimeError("Unexpected")
        client = MiddlewareWsClient(AsyncIteratorMock([], raise_on_iter=err))

        messages = [msg async for msg in client]

        assert len(messages) == 1
        assert messages[0].type == WsMessageType.ERROR
        assert messages[0].data is err

    @pytest.mark.asyncio
    async def test_iter_skips_undecodable_binary(self):
        """Test iteration skips binary frames that are not UTF-8."""
        client = MiddlewareWsClient(
            AsyncIteratorMock(["text1", b"\xff\xfe", b'{"id": 1}'])
        )

        messages = [msg async for msg in client]

        text = [m.data for m in messages if m.type == WsMessageType.TEXT]
        assert text == ["text1", '{"id": 1}']


class TestConnectWebsocket:
    """Tests for connect_websocket()."""

    @pytest.mark.asyncio
    async def test_wss_uses_ssl_context(self):
        """Test wss URLs get an SSL context."""
        with patch(
            "truenas_transport.ws.websockets.connect", new=AsyncMock()
        ) as mock_connect:
            await connect_websocket(URL, insecure=True)

        kwargs = mock_connect.call_args.kwargs
        assert isinstance(kwargs["ssl"], ssl.SSLContext)
        assert kwargs["ssl"].verify_mode == ssl.CERT_NONE
        assert kwargs["max_size"] is None

    @pytest.mark.asyncio
    async def test_ws_has_no_ssl(self):
        """Test plaintext URLs get no SSL argument."""
        with patch(
            "truenas_transport.ws.websockets.connect", new=AsyncMock()
        ) as mock_connect:
            await connect_websocket("ws://10.0.0.1:8080/ws")

        assert "ssl" not in mock_connect.call_args.kwargs

    @pytest.mark.asyncio
    async def test_handshake_errors(self):
        """Test invalid URIs map to HandshakeError."""
        with patch(
            "truenas_transport.ws.websockets.connect",
            new=AsyncMock(side_effect=InvalidURI("bad://", "unsupported scheme")),
        ):
            with pytest.raises(HandshakeError):
                await connect_websocket("bad://")

    @pytest.mark.asyncio
    async def test_os_errors(self):
        """Test refused connections map to TransportError."""
        with patch(
            "truenas_transport.ws.websockets.connect",
            new=AsyncMock(side_effect=ConnectionRefusedError("refused")),
        ):
            with pytest.raises(TransportError, match="refused"):
                await connect_websocket(URL)

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test slow handshakes map to CallTimeout."""
        with patch(
            "truenas_transport.ws.websockets.connect",
            new=AsyncMock(side_effect=TimeoutError()),
        ):
            with pytest.raises(CallTimeout):
                await connect_websocket(URL, timeout=0.1)

    def test_secure_context_verifies(self):
        """Test the default context keeps certificate verification."""
        context = build_ssl_context(insecure=False)
        assert context.verify_mode == ssl.CERT_REQUIRED
        assert context.check_hostname
