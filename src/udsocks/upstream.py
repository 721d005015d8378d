"""Connections to backend Unix-domain services."""

from __future__ import annotations

import asyncio
import errno
import os
from collections.abc import Awaitable, Callable

from udsocks.socks_protocol import ReplyCode, SocksError

StreamPair = tuple[asyncio.StreamReader, asyncio.StreamWriter]
BackendConnector = Callable[..., Awaitable[StreamPair]]

_ERRNO_REPLY_CODES = {
    errno.ENOENT: ReplyCode.HOST_UNREACHABLE,
    errno.ENOTDIR: ReplyCode.HOST_UNREACHABLE,
    errno.ECONNREFUSED: ReplyCode.HOST_UNREACHABLE,
    errno.EACCES: ReplyCode.CONNECTION_NOT_ALLOWED,
    errno.EPERM: ReplyCode.CONNECTION_NOT_ALLOWED,
}


class BackendConnectError(SocksError):
    """A backend connect failure, already classified as a SOCKS reply code."""

    def __init__(self, path: bytes, reply_code: ReplyCode, reason: str) -> None:
        super().__init__(f"{os.fsdecode(path)}: {reason}")
        self.path = path
        self.reply_code = reply_code


def classify_os_error(exc: OSError) -> ReplyCode:
    return _ERRNO_REPLY_CODES.get(exc.errno, ReplyCode.GENERAL_FAILURE)  # type: ignore[arg-type]


async def connect_backend(path: bytes, *, timeout: float | None = None) -> StreamPair:
    """
    Open a stream connection to the Unix-domain socket at *path*.

    Raises BackendConnectError instead of the underlying OSError so callers
    only deal with reply codes.
    """
    try:
        return await asyncio.wait_for(asyncio.open_unix_connection(path), timeout)
    except asyncio.TimeoutError as exc:
        raise BackendConnectError(path, ReplyCode.HOST_UNREACHABLE, "connect timed out") from exc
    except OSError as exc:
        raise BackendConnectError(path, classify_os_error(exc), exc.strerror or str(exc)) from exc
