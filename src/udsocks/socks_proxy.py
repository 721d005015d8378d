"""
SOCKS5 proxy server relaying clients to Unix-domain backends.

Owns the listening endpoints, accepts connections on all of them
concurrently and runs one independent ``SocksSession`` per connection.
Connections accepted on Unix-domain endpoints must pass the peer credential
check before a single byte is read or written.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Iterable

from udsocks.config import ProxyConfig
from udsocks.debug import log_debug
from udsocks.endpoints import (
    Endpoint,
    EndpointError,
    open_listening_socket,
    remove_socket_file,
)
from udsocks.peer_auth import PeerAuthenticator
from udsocks.session import SocksSession
from udsocks.upstream import BackendConnector, connect_backend


class SocksProxyServer:
    """
    Async SOCKS5 proxy server for Unix-domain backends.

    Usage::

        server = SocksProxyServer(config)
        await server.start([UnixEndpoint("/run/udsocks.sock")])
        await server.wait_stopped()   # until stop() is called
        await server.stop()
    """

    def __init__(
        self,
        config: ProxyConfig,
        *,
        authenticator: PeerAuthenticator | None = None,
        connector: BackendConnector = connect_backend,
    ) -> None:
        self._config = config
        self._authenticator = authenticator or PeerAuthenticator(
            config.effective_allowed_uids,
            enforce=config.peer_check == "enforce",
        )
        self._connector = connector
        self._servers: list[tuple[Endpoint, asyncio.AbstractServer]] = []
        self._sessions: set[asyncio.Task] = set()
        self._stopped = asyncio.Event()

    @property
    def config(self) -> ProxyConfig:
        return self._config

    @property
    def authenticator(self) -> PeerAuthenticator:
        return self._authenticator

    @property
    def endpoints(self) -> list[Endpoint]:
        return [endpoint for endpoint, _ in self._servers]

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def bound_addresses(self) -> list[object]:
        """Local addresses of all listening sockets (useful with port 0)."""
        addresses = []
        for _, server in self._servers:
            for sock in server.sockets:
                addresses.append(sock.getsockname())
        return addresses

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, endpoints: Iterable[Endpoint]) -> None:
        """
        Start accepting on every endpoint.

        Raises EndpointError if any endpoint cannot be set up; endpoints
        already started by this call are closed again.
        """
        try:
            for endpoint in endpoints:
                await self._start_endpoint(endpoint)
        except EndpointError:
            for server in self._close_listeners():
                await server.wait_closed()
            raise

        if not self._servers:
            raise EndpointError("No listening endpoints configured")
        self._stopped.clear()

    async def _start_endpoint(self, endpoint: Endpoint) -> None:
        sock = open_listening_socket(endpoint, backlog=self._config.backlog)
        callback = functools.partial(self._handle_client, endpoint=endpoint)
        try:
            if endpoint.is_unix:
                server = await asyncio.start_unix_server(callback, sock=sock)
            else:
                server = await asyncio.start_server(callback, sock=sock)
        except OSError as exc:
            sock.close()
            remove_socket_file(endpoint)
            raise EndpointError(f"Cannot listen on {endpoint}: {exc}") from exc
        self._servers.append((endpoint, server))
        log_debug(f"SOCKS proxy listening on {endpoint}")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def stop(self) -> None:
        """
        Stop accepting, let sessions drain for ``shutdown_grace`` seconds,
        then cancel whatever is still running.
        """
        servers = self._close_listeners()

        if self._sessions:
            log_debug(f"Waiting for {len(self._sessions)} session(s) to finish")
            _, pending = await asyncio.wait(
                set(self._sessions), timeout=self._config.shutdown_grace
            )
            for task in pending:
                task.cancel()
            if pending:
                log_debug(f"Cancelled {len(pending)} session(s) at shutdown")
                await asyncio.gather(*pending, return_exceptions=True)

        for server in servers:
            await server.wait_closed()

        self._stopped.set()
        log_debug("SOCKS proxy server stopped")

    def _close_listeners(self) -> list[asyncio.AbstractServer]:
        servers, self._servers = self._servers, []
        for endpoint, server in servers:
            server.close()
            remove_socket_file(endpoint)
        return [server for _, server in servers]

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        endpoint: Endpoint,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._sessions.add(task)
            task.add_done_callback(self._sessions.discard)

        if endpoint.is_unix and not self._authenticator.authorize(
            writer.get_extra_info("socket")
        ):
            log_debug(f"Connection rejected on {endpoint}")
            writer.close()
            return

        session = SocksSession(reader, writer, self._config, connector=self._connector)
        log_debug(f"[{session.id}] New connection on {endpoint}")
        try:
            state = await session.run()
        except Exception as exc:
            log_debug(f"[{session.id}] Session crashed: {exc!r}", level="error")
            return
        log_debug(f"[{session.id}] Session ended in state {state.name}")
