"""Shared pytest fixtures for the test suite."""

from __future__ import annotations

import asyncio
import os
import shutil
import socket
import tempfile

import pytest

from udsocks.config import ProxyConfig
from udsocks.platform_utils import get_platform


def is_macos() -> bool:
    return get_platform() == "macos"


def is_linux() -> bool:
    return get_platform() == "linux"


def has_peer_credentials() -> bool:
    return is_linux() or is_macos()


skip_if_not_linux = pytest.mark.skipif(not is_linux(), reason="Linux only")
skip_without_peer_credentials = pytest.mark.skipif(
    not has_peer_credentials(),
    reason="Requires macOS or Linux peer credentials",
)


@pytest.fixture
def sock_dir():
    """
    Short temporary directory for Unix-domain sockets.

    pytest's tmp_path can exceed the ~104 byte sun_path limit on macOS.
    """
    path = tempfile.mkdtemp(prefix="uds-", dir="/tmp")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def proxy_config(sock_dir) -> ProxyConfig:
    return ProxyConfig(directory=sock_dir, handshake_timeout=5.0, connect_timeout=5.0)


async def open_stream_pair() -> tuple[
    tuple[asyncio.StreamReader, asyncio.StreamWriter],
    tuple[asyncio.StreamReader, asyncio.StreamWriter],
]:
    """Two connected asyncio stream ends over a Unix socketpair."""
    left, right = socket.socketpair()
    return (
        await asyncio.open_unix_connection(sock=left),
        await asyncio.open_unix_connection(sock=right),
    )


async def start_echo_backend(path: str) -> asyncio.AbstractServer:
    """Unix-domain backend that echoes everything until EOF."""

    async def _echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        while True:
            data = await reader.read(65536)
            if not data:
                break
            writer.write(data)
            await writer.drain()
        writer.close()

    return await asyncio.start_unix_server(_echo, path=path)


def make_connect_request(hostname: bytes, port: int) -> bytes:
    return bytes([5, 1, 0, 3, len(hostname)]) + hostname + port.to_bytes(2, "big")


@pytest.fixture
def backend_socket_path(sock_dir):
    def _path(hostname: str, port: int) -> str:
        return os.path.join(sock_dir, f"{hostname}_{port}")

    return _path
