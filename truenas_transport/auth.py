"""Login handshake performed right after the socket opens."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .errors import AuthenticationError, DecodeError, ProtocolError

if TYPE_CHECKING:
    from .correlator import Correlator

_LOGGER = logging.getLogger(__name__)

LOGIN_WITH_API_KEY_METHOD = "auth.login_with_api_key"
LOGIN_WITH_PASSWORD_METHOD = "auth.login"

MAX_LOGIN_ATTEMPTS = 5
INITIAL_BACKOFF = 5.0

RATE_LIMIT_MARKER = "Rate Limit"


@dataclass(frozen=True)
class ApiKeyCredentials:
    """Log in with a single API key."""

    api_key: str = field(repr=False)

    @property
    def method(self) -> str:
        return LOGIN_WITH_API_KEY_METHOD

    def params(self) -> list[Any]:
        return [self.api_key]


@dataclass(frozen=True)
class PasswordCredentials:
    """Log in with a username and password."""

    username: str
    password: str = field(repr=False)

    @property
    def method(self) -> str:
        return LOGIN_WITH_PASSWORD_METHOD

    def params(self) -> list[Any]:
        return [self.username, self.password]


Credentials = ApiKeyCredentials | PasswordCredentials


def is_rate_limited(err: ProtocolError) -> bool:
    """Return True when the server rejected a login for rate limiting."""
    return RATE_LIMIT_MARKER in str(err)


async def authenticate(
    caller: Correlator,
    credentials: Credentials,
    *,
    max_attempts: int = MAX_LOGIN_ATTEMPTS,
    initial_backoff: float = INITIAL_BACKOFF,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "",
) -> None:
    """Log in, backing off exponentially while the server rate-limits us.

    At most ``max_attempts`` login calls are made. Waits between them start
    at ``initial_backoff`` seconds and double each time.

    Raises:
        AuthenticationError: Login rejected, login returned a falsy result,
            the result was undecodable, or rate limiting outlasted the
            attempt budget
        TransportError: The socket failed during login
        CallTimeout: The login call exceeded its deadline
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    backoff = initial_backoff
    for attempt in range(1, max_attempts + 1):
        try:
            result = await caller.call(credentials.method, credentials.params())
        except ProtocolError as err:
            if is_rate_limited(err) and attempt < max_attempts:
                _LOGGER.warning(
                    "[%s] Rate limited during authentication, retrying in %ss "
                    "(attempt %d/%d)",
                    label,
                    backoff,
                    attempt,
                    max_attempts,
                )
                await sleep(backoff)
                backoff *= 2
                continue
            raise AuthenticationError(f"Authentication failed: {err}") from err
        except DecodeError as err:
            raise AuthenticationError(f"Authentication failed: {err}") from err

        if not result:
            raise AuthenticationError("Authentication failed: login returned false")

        _LOGGER.debug("[%s] Authenticated via %s", label, credentials.method)
        return
