"""Client configuration: endpoint, credentials and timeouts.

Values come from explicit arguments, a YAML file, or ``TRUENAS_*``
environment variables. Explicit values win over the environment.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .auth import ApiKeyCredentials, Credentials, PasswordCredentials
from .errors import ConfigError

API_PATH = "/api/current"
DEFAULT_SCHEME = "wss://"

ENV_HOST = "TRUENAS_HOST"
ENV_API_KEY = "TRUENAS_API_KEY"
ENV_USERNAME = "TRUENAS_USERNAME"
ENV_PASSWORD = "TRUENAS_PASSWORD"
ENV_INSECURE = "TRUENAS_INSECURE"

_TRUTHY = frozenset({"1", "true", "yes", "on"})


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _check_number(name: str, value: Any, *, optional: bool) -> float | None:
    if value is None and optional:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return value


@dataclass(frozen=True)
class ClientConfig:
    """Connection settings for one middleware endpoint.

    Attributes:
        host: Host name or WebSocket URL. ``wss://`` is assumed without a scheme.
        api_key: API key for ``auth.login_with_api_key``.
        username: Username for ``auth.login`` when no API key is set.
        password: Password for ``auth.login``.
        insecure: Skip TLS certificate verification.
        connect_timeout: Socket connect and handshake timeout (seconds).
        call_timeout: Default per-call deadline; None waits forever.
        ping_interval: WebSocket keepalive ping interval (seconds).
    """

    host: str = ""
    api_key: str | None = field(default=None, repr=False)
    username: str | None = None
    password: str | None = field(default=None, repr=False)
    insecure: bool = False
    connect_timeout: float = 15.0
    call_timeout: float | None = 60.0
    ping_interval: int | None = 20

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ClientConfig:
        """Build a config from ``TRUENAS_*`` environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            host=env.get(ENV_HOST, ""),
            api_key=env.get(ENV_API_KEY) or None,
            username=env.get(ENV_USERNAME) or None,
            password=env.get(ENV_PASSWORD) or None,
            insecure=_parse_bool(env.get(ENV_INSECURE, "")),
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ClientConfig:
        """Build a config from a mapping, rejecting unknown keys and bad types."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
        values = dict(data)
        if not isinstance(values.get("host", ""), str):
            raise ConfigError(f"host must be a string, got {values['host']!r}")
        for name in ("api_key", "username", "password"):
            value = values.get(name)
            if value is not None and not isinstance(value, str):
                raise ConfigError(f"{name} must be a string")
        if "insecure" in values:
            values["insecure"] = _parse_bool(values["insecure"])
        for name in ("connect_timeout", "call_timeout", "ping_interval"):
            if name in values:
                values[name] = _check_number(
                    name, values[name], optional=name != "connect_timeout"
                )
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: Path | str) -> ClientConfig:
        """Load a config from a YAML mapping file."""
        path = Path(path)
        try:
            with path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as err:
            raise ConfigError(f"Configuration file not found: {path}") from err
        except yaml.YAMLError as err:
            raise ConfigError(f"Invalid YAML in {path}: {err}") from err
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration in {path} must be a mapping")
        return cls.from_mapping(data)

    @classmethod
    def resolve(
        cls,
        explicit: Mapping[str, Any] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> ClientConfig:
        """Combine environment values with explicit overrides.

        Explicit values that are None fall back to the environment.
        """
        config = cls.from_env(environ)
        overrides = {k: v for k, v in (explicit or {}).items() if v is not None}
        if not overrides:
            return config
        base = {f.name: getattr(config, f.name) for f in fields(cls)}
        base.update(overrides)
        return cls.from_mapping(base)

    def validate(self) -> ClientConfig:
        """Check that an endpoint and one set of credentials are present."""
        if not self.host:
            raise ConfigError(
                "The host is not configured. Set it explicitly or with the "
                f"{ENV_HOST} environment variable."
            )
        if not self.api_key and not (self.username and self.password):
            raise ConfigError(
                "No credentials configured. Set an API key (or the "
                f"{ENV_API_KEY} environment variable) or a username and password."
            )
        return self

    @property
    def endpoint_url(self) -> str:
        """WebSocket URL of the API endpoint; any host path is kept as a prefix."""
        url = self.host.strip().rstrip("/")
        if not url.startswith(("ws://", "wss://")):
            url = DEFAULT_SCHEME + url
        return url + API_PATH

    @property
    def credentials(self) -> Credentials:
        """Credentials for the login handshake; the API key is preferred."""
        if self.api_key:
            return ApiKeyCredentials(self.api_key)
        if self.username and self.password:
            return PasswordCredentials(self.username, self.password)
        raise ConfigError("No credentials configured")

    def credential_key(self) -> tuple[str, str, str, str, bool]:
        """Key identifying connections that may be shared."""
        return (
            self.endpoint_url,
            self.api_key or "",
            self.username or "",
            self.password or "",
            self.insecure,
        )

    def with_overrides(self, **changes: Any) -> ClientConfig:
        return replace(self, **changes)
