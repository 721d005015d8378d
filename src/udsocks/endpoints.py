"""
Listening endpoints: explicit Unix-domain paths, TCP addresses and
descriptors inherited through systemd-style socket activation.
"""

from __future__ import annotations

import contextlib
import ipaddress
import os
import socket
import stat
from collections.abc import Iterable, MutableMapping
from dataclasses import dataclass

from udsocks.debug import log_debug

SD_LISTEN_FDS_START = 3
_ACTIVATION_ENV_VARS = ("LISTEN_PID", "LISTEN_FDS", "LISTEN_FDNAMES")


class EndpointError(Exception):
    """A listening endpoint could not be set up."""


@dataclass(frozen=True)
class UnixEndpoint:
    path: str

    @property
    def is_unix(self) -> bool:
        return True

    def __str__(self) -> str:
        return f"unix:{self.path}"


@dataclass(frozen=True)
class TcpEndpoint:
    host: str
    port: int

    @property
    def is_unix(self) -> bool:
        return False

    def __str__(self) -> str:
        if ":" in self.host:
            return f"tcp:[{self.host}]:{self.port}"
        return f"tcp:{self.host}:{self.port}"


@dataclass(frozen=True)
class InheritedEndpoint:
    fd: int
    family: int
    type: int
    name: str | None = None

    @property
    def is_unix(self) -> bool:
        return self.family == socket.AF_UNIX

    def __str__(self) -> str:
        label = f" ({self.name})" if self.name else ""
        kind = "unix" if self.is_unix else "tcp"
        return f"fd:{self.fd}{label} [{kind}]"


Endpoint = UnixEndpoint | TcpEndpoint | InheritedEndpoint


def parse_endpoint(value: str) -> Endpoint:
    """
    Turn a command-line endpoint string into an Endpoint.

    ``127.0.0.1:1080`` and ``[::1]:1080`` are TCP endpoints; anything that is
    not an IP literal with a port is taken as a Unix-domain socket path.
    """
    host: str | None = None
    port_str = ""
    if value.startswith("["):
        bracket_host, sep, rest = value[1:].partition("]")
        if sep and rest.startswith(":"):
            host, port_str = bracket_host, rest[1:]
    else:
        candidate, sep, port_str = value.rpartition(":")
        if sep and ":" not in candidate:
            host = candidate

    if host is not None and port_str.isdigit():
        try:
            ipaddress.ip_address(host)
        except ValueError:
            pass
        else:
            port = int(port_str)
            if port > 0xFFFF:
                raise EndpointError(f"Port {port} out of range in endpoint '{value}'")
            return TcpEndpoint(host, port)

    if not value:
        raise EndpointError("Endpoint must not be empty")
    return UnixEndpoint(value)


def listen_fds(
    environ: MutableMapping[str, str] | None = None,
    *,
    unset_environment: bool = True,
    pid: int | None = None,
) -> list[InheritedEndpoint]:
    """
    Discover listening sockets passed by a supervisor (sd_listen_fds).

    Descriptors are adopted only when LISTEN_PID names this process. Each
    descriptor's family and type is read from the socket itself.
    """
    env = os.environ if environ is None else environ
    try:
        try:
            listen_pid = int(env.get("LISTEN_PID", ""))
        except ValueError:
            return []
        if listen_pid != (os.getpid() if pid is None else pid):
            return []

        try:
            count = int(env.get("LISTEN_FDS", "0"))
        except ValueError:
            raise EndpointError(f"Invalid LISTEN_FDS value {env.get('LISTEN_FDS')!r}") from None

        names = env.get("LISTEN_FDNAMES", "").split(":") if env.get("LISTEN_FDNAMES") else []
        endpoints = []
        for index, fd in enumerate(range(SD_LISTEN_FDS_START, SD_LISTEN_FDS_START + count)):
            name = names[index] if index < len(names) else None
            endpoints.append(_inspect_fd(fd, name))
        return endpoints
    finally:
        if unset_environment:
            for var in _ACTIVATION_ENV_VARS:
                env.pop(var, None)


def _inspect_fd(fd: int, name: str | None) -> InheritedEndpoint:
    try:
        sock = socket.socket(fileno=fd)
    except OSError as exc:
        raise EndpointError(f"Inherited descriptor {fd} is not a socket: {exc}") from exc
    try:
        family, sock_type = sock.family, sock.type
    finally:
        sock.detach()

    if sock_type != socket.SOCK_STREAM:
        raise EndpointError(f"Inherited descriptor {fd} is not a stream socket")
    if family not in (socket.AF_UNIX, socket.AF_INET, socket.AF_INET6):
        raise EndpointError(f"Inherited descriptor {fd} has unsupported family {family}")

    os.set_inheritable(fd, False)
    return InheritedEndpoint(fd=fd, family=family, type=sock_type, name=name)


def _remove_stale_socket(path: str) -> None:
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise EndpointError(f"Cannot inspect {path}: {exc}") from exc

    if not stat.S_ISSOCK(st.st_mode):
        raise EndpointError(f"Refusing to replace {path}: not a socket")
    log_debug(f"Removing stale socket {path}")
    os.unlink(path)


def open_listening_socket(endpoint: Endpoint, *, backlog: int = 128) -> socket.socket:
    """Create (or adopt) the bound, listening socket for *endpoint*."""
    if isinstance(endpoint, UnixEndpoint):
        _remove_stale_socket(endpoint.path)
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(endpoint.path)
            sock.listen(backlog)
        except OSError as exc:
            sock.close()
            raise EndpointError(f"Cannot listen on {endpoint}: {exc}") from exc
        return sock

    if isinstance(endpoint, TcpEndpoint):
        family = socket.AF_INET6 if ":" in endpoint.host else socket.AF_INET
        try:
            return socket.create_server(
                (endpoint.host, endpoint.port), family=family, backlog=backlog
            )
        except OSError as exc:
            raise EndpointError(f"Cannot listen on {endpoint}: {exc}") from exc

    try:
        return socket.socket(endpoint.family, endpoint.type, fileno=endpoint.fd)
    except OSError as exc:
        raise EndpointError(f"Cannot adopt {endpoint}: {exc}") from exc


def remove_socket_file(endpoint: Endpoint) -> None:
    """Unlink the socket file of an explicit Unix-domain endpoint."""
    if isinstance(endpoint, UnixEndpoint):
        with contextlib.suppress(FileNotFoundError):
            os.unlink(endpoint.path)


def describe_endpoints(endpoints: Iterable[Endpoint]) -> str:
    return ", ".join(str(e) for e in endpoints)
