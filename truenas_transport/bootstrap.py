"""Bring a freshly booted TrueNAS installer VM to a usable API state.

Phases:
1. Installer (plaintext ``ws://host:port/ws``): adopt the system, install to
   the first disk, reboot.
2. API (``wss://host:https_port/api/current``): log in with the admin
   password and create an API key, written to a file with mode 0600.
3. Pool: create a striped data pool from every non-boot disk.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from .client import TrueNASClient
from .config import ClientConfig
from .correlator import LockstepCorrelator
from .errors import (
    AuthenticationError,
    CallTimeout,
    TransportError,
    TrueNASClientError,
)
from .ws_client import MiddlewareWsClient

_LOGGER = logging.getLogger(__name__)

ADMIN_USERNAME = "truenas_admin"
RETRY_INTERVAL = 3.0
REBOOT_GRACE = 15.0

Sleep = Callable[[float], Awaitable[Any]]


class BootstrapError(TrueNASClientError):
    """A setup phase cannot continue."""


@dataclass(frozen=True)
class SetupOptions:
    """Options for a full setup run. Timeouts are in seconds."""

    host: str = "127.0.0.1"
    port: int = 8080
    https_port: int = 8443
    admin_password: str = "testing123"
    api_key_name: str = "terraform-integration-test"
    pool_name: str = "tank"
    output_file: Path = Path("/tmp/truenas-api-key")
    install_timeout: float = 15 * 60
    boot_timeout: float = 10 * 60
    pool_timeout: float = 5 * 60

    @property
    def installer_url(self) -> str:
        return f"ws://{self.host}:{self.port}/ws"

    def api_config(self) -> ClientConfig:
        return ClientConfig(
            host=f"wss://{self.host}:{self.https_port}",
            username=ADMIN_USERNAME,
            password=self.admin_password,
            insecure=True,
            call_timeout=120.0,
        )


# -----------------------------------------------------------------------------
# Waiting for services
# -----------------------------------------------------------------------------


async def wait_for_port(
    host: str,
    port: int,
    timeout: float,
    *,
    interval: float = RETRY_INTERVAL,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """Wait until a TCP connection to ``host:port`` succeeds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    _LOGGER.info("Waiting for %s:%d to be reachable...", host, port)
    while loop.time() < deadline:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=2.0
            )
        except (OSError, TimeoutError):
            await sleep(interval)
            continue
        writer.close()
        await writer.wait_closed()
        _LOGGER.info("Port %d is reachable", port)
        return
    raise BootstrapError(f"Timed out waiting for {host}:{port} after {timeout}s")


async def wait_for_websocket(
    url: str,
    timeout: float,
    *,
    insecure: bool = False,
    interval: float = RETRY_INTERVAL,
    sleep: Sleep = asyncio.sleep,
) -> MiddlewareWsClient:
    """Retry a WebSocket connect until it succeeds or ``timeout`` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    _LOGGER.info("Waiting for WebSocket at %s...", url)
    while loop.time() < deadline:
        ws_client = MiddlewareWsClient()
        try:
            await ws_client.connect(url, insecure=insecure)
        except (TransportError, CallTimeout) as err:
            _LOGGER.debug("WebSocket at %s not ready: %s", url, err)
            await sleep(interval)
            continue
        _LOGGER.info("WebSocket connected: %s", url)
        return ws_client
    raise BootstrapError(f"Timed out waiting for WebSocket at {url} after {timeout}s")


async def connect_api(
    config: ClientConfig,
    timeout: float,
    *,
    interval: float = RETRY_INTERVAL,
    sleep: Sleep = asyncio.sleep,
) -> TrueNASClient:
    """Open an authenticated client, retrying while the API is coming up.

    Rejected credentials are not retried.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    _LOGGER.info("Waiting for TrueNAS API at %s...", config.endpoint_url)
    while loop.time() < deadline:
        try:
            return await TrueNASClient.open(config)
        except AuthenticationError:
            raise
        except (TransportError, CallTimeout) as err:
            _LOGGER.debug("API at %s not ready: %s", config.endpoint_url, err)
            await sleep(interval)
    raise BootstrapError(
        f"Timed out waiting for TrueNAS API at {config.endpoint_url} after {timeout}s"
    )


# -----------------------------------------------------------------------------
# Phase 1: installer
# -----------------------------------------------------------------------------


def pick_install_disk(disks: Any) -> str:
    """Return the name of the first disk reported by the installer."""
    if not isinstance(disks, list) or not disks:
        raise BootstrapError("No disks found")
    first = disks[0]
    name = first.get("name") if isinstance(first, Mapping) else None
    if not isinstance(name, str) or not name:
        raise BootstrapError(f"Could not get disk name from: {first!r}")
    return name


async def run_installer(
    rpc: LockstepCorrelator,
    admin_password: str,
    install_timeout: float,
) -> None:
    """Adopt the installer, install to the first disk and reboot."""
    adopted = await rpc.call("is_adopted", result_type=bool)
    _LOGGER.info("is_adopted = %s", adopted)
    if adopted:
        raise BootstrapError("System is already adopted; cannot run installer")

    auth_key = await rpc.call("adopt")
    if not isinstance(auth_key, str):
        raise BootstrapError("adopt did not return an auth key")
    _LOGGER.info("Adopted, got auth key")

    if not await rpc.call("authenticate", [auth_key]):
        raise BootstrapError("authenticate returned false")
    _LOGGER.info("Authenticated with installer")

    disk = pick_install_disk(await rpc.call("list_disks"))
    _LOGGER.info("Using disk: %s", disk)

    _LOGGER.info("Starting installation (this takes several minutes)...")
    install_params = {
        "disks": [disk],
        "set_pmbr": False,
        "authentication": {
            "username": ADMIN_USERNAME,
            "password": admin_password,
        },
    }
    await rpc.call("install", [install_params], timeout=install_timeout)
    _LOGGER.info("Installation complete")

    _LOGGER.info("Rebooting...")
    try:
        await rpc.call("reboot", timeout=30.0)
    except TrueNASClientError as err:
        # The installer often drops the socket before answering
        _LOGGER.info("reboot did not answer cleanly: %s", err)


# -----------------------------------------------------------------------------
# Phase 2: API key
# -----------------------------------------------------------------------------


async def create_api_key(client: TrueNASClient, name: str) -> str:
    """Create an API key for the admin user and return its secret."""
    result = await client.call(
        "api_key.create", [{"name": name, "username": ADMIN_USERNAME}]
    )
    key = result.get("key") if isinstance(result, Mapping) else None
    if not isinstance(key, str) or not key:
        raise BootstrapError("api_key.create did not return a key")
    _LOGGER.info("Created API key (id=%s)", result.get("id"))
    return key


def write_api_key(path: Path, key: str) -> None:
    """Write ``key`` to ``path`` readable by the owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(key)
    os.chmod(path, 0o600)


# -----------------------------------------------------------------------------
# Phase 3: data pool
# -----------------------------------------------------------------------------


def select_pool_disks(disks: Iterable[Any], boot_disks: Iterable[str]) -> list[str]:
    """Names of all disks that are not boot disks."""
    boot = set(boot_disks)
    selected: list[str] = []
    for disk in disks:
        name = disk.get("name") if isinstance(disk, Mapping) else None
        if not isinstance(name, str):
            continue
        if name in boot:
            _LOGGER.info("Skipping boot disk: %s", name)
            continue
        selected.append(name)
    if not selected:
        raise BootstrapError(
            "No available disks for data pool. The VM needs at least 2 disks "
            "(1 for OS, 1+ for data)."
        )
    return selected


async def create_pool(
    client: TrueNASClient,
    pool_name: str,
    timeout: float,
) -> Any:
    """Create a striped pool over every non-boot disk and wait for the job."""
    disks = await client.call("disk.query")
    boot_disks = await client.call("boot.get_disks")
    _LOGGER.info("Boot disks: %s", boot_disks)

    pool_disks = select_pool_disks(disks or [], boot_disks or [])
    _LOGGER.info("Available disks for pool: %s", pool_disks)

    params = {
        "name": pool_name,
        "topology": {"data": [{"type": "STRIPE", "disks": pool_disks}]},
    }
    return await client.call_job("pool.create", [params], timeout=timeout)


async def pool_exists(client: TrueNASClient, pool_name: str) -> bool:
    pools = await client.call("pool.query")
    return any(
        isinstance(pool, Mapping) and pool.get("name") == pool_name
        for pool in pools or []
    )


# -----------------------------------------------------------------------------
# Orchestration
# -----------------------------------------------------------------------------


async def run_setup(
    options: SetupOptions,
    *,
    sleep: Sleep = asyncio.sleep,
    on_key: Callable[[str], Any] | None = None,
) -> str:
    """Run all phases and return the created API key.

    ``on_key`` receives the key as soon as it is written, before the pool
    phase, so a later failure does not hide a key that already exists.
    """
    _LOGGER.info("=== Phase 1: TrueNAS Installer ===")
    await wait_for_port(options.host, options.port, options.install_timeout, sleep=sleep)
    ws_client = await wait_for_websocket(options.installer_url, 120.0, sleep=sleep)
    installer = LockstepCorrelator(ws_client, label=options.installer_url)
    try:
        await run_installer(installer, options.admin_password, options.install_timeout)
    finally:
        await installer.close()

    _LOGGER.info("=== Phase 2: Bootstrap API Key ===")
    _LOGGER.info("Waiting for reboot...")
    await sleep(REBOOT_GRACE)

    client = await connect_api(options.api_config(), options.boot_timeout, sleep=sleep)
    async with client:
        _LOGGER.info("Logged in to TrueNAS API")
        key = await create_api_key(client, options.api_key_name)
        write_api_key(options.output_file, key)
        _LOGGER.info("API key written to %s", options.output_file)
        if on_key is not None:
            on_key(key)

        _LOGGER.info("=== Phase 3: Create Data Pool ===")
        await create_pool(client, options.pool_name, options.pool_timeout)
        if not await pool_exists(client, options.pool_name):
            raise BootstrapError(f"Pool {options.pool_name!r} missing after creation")
        _LOGGER.info("Created pool %r", options.pool_name)

    _LOGGER.info("Setup complete!")
    return key


@click.command(name="setup-truenas")
@click.option("--host", default="127.0.0.1", show_default=True, help="TrueNAS host")
@click.option(
    "--port", default=8080, show_default=True, help="TrueNAS HTTP port (installer)"
)
@click.option(
    "--https-port",
    default=8443,
    show_default=True,
    help="TrueNAS HTTPS port (API, used for bootstrap)",
)
@click.option(
    "--admin-password",
    default="testing123",
    show_default=True,
    help="Admin password to set during install",
)
@click.option(
    "--api-key-name",
    default="terraform-integration-test",
    show_default=True,
    help="Name of the API key to create",
)
@click.option(
    "--pool-name", default="tank", show_default=True, help="Name of the data pool"
)
@click.option(
    "--output-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=Path("/tmp/truenas-api-key"),
    show_default=True,
    help="File to write the API key to",
)
@click.option(
    "--install-timeout",
    type=float,
    default=15 * 60,
    show_default=True,
    help="Timeout for the installation phase (seconds)",
)
@click.option(
    "--boot-timeout",
    type=float,
    default=10 * 60,
    show_default=True,
    help="Timeout for the post-install boot (seconds)",
)
@click.option("-v", "--verbose", is_flag=True, help="Log protocol traffic")
def main(
    host: str,
    port: int,
    https_port: int,
    admin_password: str,
    api_key_name: str,
    pool_name: str,
    output_file: Path,
    install_timeout: float,
    boot_timeout: float,
    verbose: bool,
) -> None:
    """Install TrueNAS, create an API key and a data pool.

    The API key is printed on stdout and written to --output-file.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(message)s",
        datefmt="%H:%M:%S",
    )
    options = SetupOptions(
        host=host,
        port=port,
        https_port=https_port,
        admin_password=admin_password,
        api_key_name=api_key_name,
        pool_name=pool_name,
        output_file=output_file,
        install_timeout=install_timeout,
        boot_timeout=boot_timeout,
    )
    try:
        asyncio.run(run_setup(options, on_key=click.echo))
    except TrueNASClientError as err:
        raise click.ClickException(str(err)) from err


if __name__ == "__main__":
    main()
