"""
Peer credential checks for connections accepted on Unix-domain listeners.

Credential retrieval is platform specific and sits behind
``PeerCredentialSource``. When the platform offers no way to query the
peer, every Unix-domain peer is refused.
"""

from __future__ import annotations

import socket
import struct
from collections.abc import Iterable
from typing import Protocol

from udsocks.debug import log_debug
from udsocks.platform_utils import get_platform

# struct ucred { pid_t pid; uid_t uid; gid_t gid; }
_UCRED = struct.Struct("3i")

# struct xucred { u_int cr_version; uid_t cr_uid; short cr_ngroups; gid_t cr_groups[16]; }
_XUCRED_HEAD = struct.Struct("=IIh")
_XUCRED_SIZE = 76
_SOL_LOCAL = 0
_LOCAL_PEERCRED = 0x001


class PeerCredentialSource(Protocol):
    supported: bool

    def query_peer_uid(self, sock: socket.socket) -> int | None:
        """Return the peer's user id, or None when it cannot be determined."""
        ...


class LinuxPeerCredentials:
    """SO_PEERCRED on Linux."""

    supported = True

    def query_peer_uid(self, sock: socket.socket) -> int | None:
        try:
            raw = sock.getsockopt(socket.SOL_SOCKET, socket.SO_PEERCRED, _UCRED.size)
        except OSError as exc:
            log_debug(f"SO_PEERCRED failed: {exc}", level="warn")
            return None
        _pid, uid, _gid = _UCRED.unpack(raw)
        return uid


class BSDPeerCredentials:
    """LOCAL_PEERCRED on macOS and FreeBSD."""

    supported = True

    def query_peer_uid(self, sock: socket.socket) -> int | None:
        try:
            raw = sock.getsockopt(_SOL_LOCAL, _LOCAL_PEERCRED, _XUCRED_SIZE)
        except OSError as exc:
            log_debug(f"LOCAL_PEERCRED failed: {exc}", level="warn")
            return None
        if len(raw) < _XUCRED_HEAD.size:
            return None
        _version, uid, _ngroups = _XUCRED_HEAD.unpack_from(raw)
        return uid


class UnsupportedPeerCredentials:
    supported = False

    def query_peer_uid(self, sock: socket.socket) -> int | None:
        return None


def get_peer_credential_source() -> PeerCredentialSource:
    """Pick the credential source for the running platform."""
    p = get_platform()
    if p == "linux" and hasattr(socket, "SO_PEERCRED"):
        return LinuxPeerCredentials()
    if p in ("macos", "freebsd"):
        return BSDPeerCredentials()
    return UnsupportedPeerCredentials()


class PeerAuthenticator:
    """
    Decide whether a Unix-domain peer may use the proxy.

    A peer is authorized when its user id is in ``allowed_uids``. Failure to
    retrieve the credential counts as a denial. With ``enforce=False`` every
    peer is authorized and no credential lookup happens.
    """

    def __init__(
        self,
        allowed_uids: Iterable[int],
        *,
        source: PeerCredentialSource | None = None,
        enforce: bool = True,
    ) -> None:
        self._allowed_uids = frozenset(allowed_uids)
        self._source = source if source is not None else get_peer_credential_source()
        self._enforce = enforce

    @property
    def allowed_uids(self) -> frozenset[int]:
        return self._allowed_uids

    @property
    def enforcing(self) -> bool:
        return self._enforce

    @property
    def credentials_supported(self) -> bool:
        return self._source.supported

    def authorize(self, sock: socket.socket | None) -> bool:
        if not self._enforce:
            return True
        if sock is None:
            return False
        uid = self._source.query_peer_uid(sock)
        if uid is None:
            log_debug("Peer credentials unavailable, rejecting connection", level="warn")
            return False
        if uid not in self._allowed_uids:
            log_debug(f"Peer uid {uid} is not allowed, rejecting connection")
            return False
        return True
