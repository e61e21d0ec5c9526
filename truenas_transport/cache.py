"""Reference-counted sharing of authenticated clients.

A provider may be configured many times with the same endpoint and
credentials. Rather than reconnecting every time, it leases a client from a
:class:`ClientCache` it owns. Entries are keyed by
``ClientConfig.credential_key()``; an entry whose client is no longer ready
is replaced on the next acquire.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from .client import TrueNASClient
from .config import ClientConfig

_LOGGER = logging.getLogger(__name__)

CacheKey = tuple[Any, ...]


@dataclass(slots=True)
class _CacheEntry:
    client: TrueNASClient
    refcount: int = 0
    invalidated: bool = False
    closed: bool = False


class ClientLease:
    """A counted reference to a cached client.

    Usage:
        async with await cache.acquire(config) as client:
            await client.call("system.info")
    """

    def __init__(self, cache: ClientCache, entry: _CacheEntry) -> None:
        self._cache = cache
        self._entry = entry
        self._released = False

    @property
    def client(self) -> TrueNASClient:
        return self._entry.client

    async def release(self) -> None:
        """Drop this reference. Safe to call more than once."""
        if self._released:
            return
        self._released = True
        await self._cache._release(self._entry)

    async def __aenter__(self) -> TrueNASClient:
        return self._entry.client

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.release()


class ClientCache:
    """Owns shared clients and closes them when no longer referenced."""

    def __init__(
        self,
        client_factory: Callable[[ClientConfig], Awaitable[TrueNASClient]] | None = None,
    ) -> None:
        self._factory = client_factory or TrueNASClient.open
        self._entries: dict[CacheKey, _CacheEntry] = {}
        self._locks: dict[CacheKey, asyncio.Lock] = {}
        self._lock_users: dict[CacheKey, int] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, config: object) -> bool:
        return (
            isinstance(config, ClientConfig)
            and config.credential_key() in self._entries
        )

    def refcount(self, config: ClientConfig) -> int:
        entry = self._entries.get(config.credential_key())
        return entry.refcount if entry is not None else 0

    async def acquire(self, config: ClientConfig) -> ClientLease:
        """Lease a ready client for ``config``, connecting if needed.

        Concurrent acquires for the same key share one connect attempt.
        """
        key = config.credential_key()
        lock = self._hold_lock(key)
        try:
            async with lock:
                entry = self._entries.get(key)
                if entry is not None and not entry.client.is_ready:
                    _LOGGER.debug(
                        "[%s] Cached client is %s, replacing",
                        entry.client.label,
                        entry.client.state.value,
                    )
                    del self._entries[key]
                    await self._retire(entry)
                    entry = None

                if entry is None:
                    client = await self._factory(config)
                    entry = _CacheEntry(client=client)
                    self._entries[key] = entry
                else:
                    _LOGGER.debug("[%s] Reusing cached client", entry.client.label)

                entry.refcount += 1
                return ClientLease(self, entry)
        finally:
            self._drop_lock(key)

    async def invalidate(self, config: ClientConfig) -> None:
        """Forget the client for ``config``; it closes once unreferenced."""
        key = config.credential_key()
        entry = self._entries.pop(key, None)
        self._forget_lock(key)
        if entry is not None:
            await self._retire(entry)

    async def aclose(self) -> None:
        """Close every cached client, referenced or not."""
        entries = list(self._entries.values())
        self._entries.clear()
        for key in list(self._locks):
            self._forget_lock(key)
        for entry in entries:
            entry.invalidated = True
            await self._close(entry)

    def _hold_lock(self, key: CacheKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return lock

    def _drop_lock(self, key: CacheKey) -> None:
        users = self._lock_users[key] - 1
        if users:
            self._lock_users[key] = users
            return
        del self._lock_users[key]
        if key not in self._entries:
            self._locks.pop(key, None)

    def _forget_lock(self, key: CacheKey) -> None:
        # Only locks nobody is acquiring; _drop_lock handles the rest
        if key not in self._lock_users:
            self._locks.pop(key, None)

    async def _retire(self, entry: _CacheEntry) -> None:
        entry.invalidated = True
        if entry.refcount == 0:
            await self._close(entry)

    async def _release(self, entry: _CacheEntry) -> None:
        entry.refcount -= 1
        if entry.refcount == 0 and entry.invalidated:
            await self._close(entry)

    async def _close(self, entry: _CacheEntry) -> None:
        if entry.closed:
            return
        entry.closed = True
        await entry.client.close()
