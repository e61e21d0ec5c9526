"""Tests for the login handshake."""

from __future__ import annotations

from unittest.mock import AsyncMock, call

import pytest

from truenas_transport.auth import (
    ApiKeyCredentials,
    PasswordCredentials,
    authenticate,
    is_rate_limited,
)
from truenas_transport.errors import (
    AuthenticationError,
    DecodeError,
    ProtocolError,
    TransportError,
)

from .conftest import error, result

RATE_LIMITED = ProtocolError(-32000, "Rate Limit Exceeded")


def make_caller(*outcomes):
    """Create a correlator stand-in whose call() yields ``outcomes`` in turn."""
    caller = AsyncMock()
    caller.call.side_effect = list(outcomes)
    return caller


class TestCredentials:
    """Tests for credential login parameters."""

    def test_api_key(self):
        creds = ApiKeyCredentials("1-secret")
        assert creds.method == "auth.login_with_api_key"
        assert creds.params() == ["1-secret"]
        assert "1-secret" not in repr(creds)

    def test_password(self):
        creds = PasswordCredentials("truenas_admin", "pw")
        assert creds.method == "auth.login"
        assert creds.params() == ["truenas_admin", "pw"]
        assert "pw" not in repr(creds)


class TestAuthenticate:
    """Tests for authenticate()."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        """Test a truthy login result completes immediately."""
        caller = make_caller(True)
        sleep = AsyncMock()

        await authenticate(caller, ApiKeyCredentials("key"), sleep=sleep)

        caller.call.assert_awaited_once_with("auth.login_with_api_key", ["key"])
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_backoff_doubles(self):
        """Test rate-limit rejections are retried with doubling backoff."""
        caller = make_caller(RATE_LIMITED, RATE_LIMITED, RATE_LIMITED, True)
        sleep = AsyncMock()

        await authenticate(caller, ApiKeyCredentials("key"), sleep=sleep)

        assert caller.call.await_count == 4
        assert sleep.await_args_list == [call(5.0), call(10.0), call(20.0)]

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion(self):
        """Test the attempt budget bounds retries, then fails."""
        caller = make_caller(*[RATE_LIMITED] * 5)
        sleep = AsyncMock()

        with pytest.raises(AuthenticationError, match="Rate Limit") as exc_info:
            await authenticate(caller, ApiKeyCredentials("key"), sleep=sleep)

        assert caller.call.await_count == 5
        delays = [c.args[0] for c in sleep.await_args_list]
        assert delays == [5.0, 10.0, 20.0, 40.0]
        assert all(a < b for a, b in zip(delays, delays[1:]))
        assert exc_info.value.__cause__ is RATE_LIMITED

    @pytest.mark.asyncio
    async def test_custom_budget(self):
        """Test attempt count and initial backoff are configurable."""
        caller = make_caller(RATE_LIMITED, RATE_LIMITED)
        sleep = AsyncMock()

        with pytest.raises(AuthenticationError):
            await authenticate(
                caller,
                ApiKeyCredentials("key"),
                max_attempts=2,
                initial_backoff=0.5,
                sleep=sleep,
            )

        sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_other_errors_not_retried(self):
        """Test a non-rate-limit rejection fails without retrying."""
        caller = make_caller(ProtocolError(13, "Invalid API key"))
        sleep = AsyncMock()

        with pytest.raises(AuthenticationError, match="Invalid API key"):
            await authenticate(caller, ApiKeyCredentials("key"), sleep=sleep)

        assert caller.call.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_false_result(self):
        """Test a falsy login result is a failure."""
        caller = make_caller(False)

        with pytest.raises(AuthenticationError, match="returned false"):
            await authenticate(caller, PasswordCredentials("u", "p"), sleep=AsyncMock())

    @pytest.mark.asyncio
    async def test_decode_error(self):
        """Test an undecodable login answer is a failure."""
        caller = make_caller(DecodeError("bad frame"))

        with pytest.raises(AuthenticationError):
            await authenticate(caller, ApiKeyCredentials("key"), sleep=AsyncMock())

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self):
        """Test socket failures are not disguised as auth failures."""
        caller = make_caller(TransportError("closed"))

        with pytest.raises(TransportError):
            await authenticate(caller, ApiKeyCredentials("key"), sleep=AsyncMock())

    @pytest.mark.asyncio
    async def test_invalid_budget(self):
        with pytest.raises(ValueError):
            await authenticate(make_caller(), ApiKeyCredentials("key"), max_attempts=0)

    def test_rate_limit_detection(self):
        assert is_rate_limited(RATE_LIMITED)
        assert is_rate_limited(ProtocolError(16, "EBUSY", {"reason": "Rate Limit"}))
        assert not is_rate_limited(ProtocolError(13, "Permission denied"))


class TestBadKeyScenario:
    """Login with a bad key over a live correlator."""

    @pytest.mark.asyncio
    async def test_bad_key_then_good_key(self, fake_ws, correlator):
        """Test a rejected key leaves the connection usable for a retry."""

        def responder(request):
            if request["params"] == ["bad-key"]:
                return [error(request["id"], 13, "Invalid API key")]
            return [result(request["id"], True)]

        fake_ws.responder = responder

        with pytest.raises(ProtocolError) as exc_info:
            await correlator.call("auth.login_with_api_key", ["bad-key"])
        assert exc_info.value.code == 13

        assert await correlator.call("auth.login_with_api_key", ["good-key"]) is True
        assert not correlator.closed
