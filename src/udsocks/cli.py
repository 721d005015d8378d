"""
CLI entrypoint for udsocks.

Listens on the given Unix-domain paths, TCP addresses and socket-activated
descriptors, and relays SOCKS5 CONNECT requests for ``host:port`` to the
Unix-domain socket ``DIRECTORY/host_port``.
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path

import click

from udsocks import __version__
from udsocks.config import ProxyConfig, build_config, load_settings
from udsocks.debug import DEBUG_ENV_VAR, log_debug
from udsocks.endpoints import (
    Endpoint,
    EndpointError,
    describe_endpoints,
    listen_fds,
    parse_endpoint,
)
from udsocks.socks_proxy import SocksProxyServer


def _default_settings_path() -> Path:
    return Path.home() / ".udsocks.json"


def _parse_uid_list(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> list[int] | None:
    if value is None:
        return None
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise click.BadParameter("expected a comma-separated list of user ids") from None


async def _serve(config: ProxyConfig, endpoints: list[Endpoint]) -> None:
    server = SocksProxyServer(config)
    if server.authenticator.enforcing and not server.authenticator.credentials_supported:
        click.echo(
            "Warning: peer credentials are not available on this platform; "
            "connections on Unix-domain sockets will be refused.",
            err=True,
        )

    await server.start(endpoints)
    log_debug(f"Relaying to backends in {config.directory}")

    loop = asyncio.get_running_loop()
    shutdown = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, shutdown.set)

    try:
        await shutdown.wait()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        log_debug("Shutting down")
        await server.stop()


@click.command()
@click.argument("sockets", nargs=-1, metavar="[SOCKET]...")
@click.option(
    "--directory",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory holding the backend sockets (HOST_PORT)",
)
@click.option(
    "--allowed-uids",
    callback=_parse_uid_list,
    default=None,
    help="Comma-separated user ids allowed on Unix-domain sockets (default: own uid)",
)
@click.option(
    "--no-peer-check",
    is_flag=True,
    default=False,
    help="Accept any peer on Unix-domain sockets",
)
@click.option("--handshake-timeout", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option("--connect-timeout", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option("--idle-timeout", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option("-d", "--debug", is_flag=True, help="Enable debug logging")
@click.option(
    "-s",
    "--settings",
    type=click.Path(),
    default=None,
    help="Path to settings file (default: ~/.udsocks.json)",
)
@click.version_option(version=__version__, prog_name="udsocks")
def main(
    sockets: tuple[str, ...],
    directory: str | None,
    allowed_uids: list[int] | None,
    no_peer_check: bool,
    handshake_timeout: float | None,
    connect_timeout: float | None,
    idle_timeout: float | None,
    debug: bool,
    settings: str | None,
) -> None:
    """Relay SOCKS5 CONNECT requests to Unix-domain sockets."""
    if debug:
        os.environ[DEBUG_ENV_VAR] = "1"

    settings_path = settings or str(_default_settings_path())
    proxy_settings = load_settings(settings_path)
    if proxy_settings is None:
        log_debug(f"No settings found at {settings_path}, using defaults")

    try:
        config = build_config(
            proxy_settings,
            directory=directory,
            allowed_uids=allowed_uids,
            peer_check="disabled" if no_peer_check else None,
            handshake_timeout=handshake_timeout,
            connect_timeout=connect_timeout,
            idle_timeout=idle_timeout,
        )
    except ValueError as exc:
        if directory is None and (proxy_settings is None or proxy_settings.directory is None):
            click.echo("Error: No backend directory specified. Use --directory.", err=True)
        else:
            click.echo(f"Error: Invalid configuration: {exc}", err=True)
        sys.exit(1)

    try:
        listen = list(sockets) or (proxy_settings.listen if proxy_settings else [])
        endpoints: list[Endpoint] = [*listen_fds(), *(parse_endpoint(s) for s in listen)]
    except EndpointError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if not endpoints:
        click.echo(
            "Error: No sockets specified. Provide SOCKET arguments or use socket activation.",
            err=True,
        )
        sys.exit(1)

    log_debug(f"Endpoints: {describe_endpoints(endpoints)}")

    try:
        asyncio.run(_serve(config, endpoints))
    except EndpointError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
