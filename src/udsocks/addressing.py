"""Mapping of SOCKS targets to backend Unix-domain socket paths."""

from __future__ import annotations

import os
from dataclasses import dataclass

from udsocks.socks_protocol import InvalidTarget

_FORBIDDEN_HOSTNAME_BYTES = (b"/", b"\\", b"\x00")


def is_acceptable_hostname(hostname: bytes) -> bool:
    """A hostname must be non-empty and usable as a single path component."""
    if not hostname:
        return False
    return not any(ch in hostname for ch in _FORBIDDEN_HOSTNAME_BYTES)


@dataclass(frozen=True)
class Target:
    hostname: bytes
    port: int

    def __post_init__(self) -> None:
        if not is_acceptable_hostname(self.hostname):
            raise InvalidTarget(f"Unacceptable hostname {self.hostname!r}")
        if not 0 <= self.port <= 0xFFFF:
            raise InvalidTarget(f"Port {self.port} out of range")

    def __str__(self) -> str:
        return f"{self.hostname.decode('utf-8', errors='backslashreplace')}:{self.port}"


def backend_path(directory: str | bytes | os.PathLike, hostname: bytes, port: int) -> bytes:
    """
    Return ``{directory}/{hostname}_{port}`` as a filesystem path in bytes.

    The hostname is used byte for byte. Trailing separators on the directory
    collapse to exactly one. Nothing on disk is consulted.
    """
    base = os.fsencode(directory).rstrip(b"/")
    return base + b"/" + hostname + b"_" + str(port).encode("ascii")


def target_path(directory: str | bytes | os.PathLike, target: Target) -> bytes:
    return backend_path(directory, target.hostname, target.port)
