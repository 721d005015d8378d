"""
SOCKS5 wire format (RFC 1928): constants, reply encoding and request parsing.

Only the subset needed by the proxy is supported: the "no authentication"
method, the CONNECT command and domain-name targets. Requests for other
commands or address types are still parsed so the session can answer them
with the matching reply code.
"""

from __future__ import annotations

import asyncio
import enum
import ipaddress
import struct
from dataclasses import dataclass

# SOCKS5 constants
SOCKS_VERSION = 0x05
AUTH_NONE = 0x00
AUTH_NO_ACCEPTABLE = 0xFF
CMD_CONNECT = 0x01
CMD_BIND = 0x02
CMD_UDP_ASSOCIATE = 0x03
ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04
RSV = 0x00

_COMMAND_NAMES = {
    CMD_CONNECT: "CONNECT",
    CMD_BIND: "BIND",
    CMD_UDP_ASSOCIATE: "UDP_ASSOCIATE",
}

_REPLY = struct.Struct("!BBBB4sH")
_REQUEST_HEAD = struct.Struct("!BBBB")
_PORT = struct.Struct("!H")


class ReplyCode(enum.IntEnum):
    """REP field values of a SOCKS5 reply."""

    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    CONNECTION_NOT_ALLOWED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08


class SocksError(Exception):
    """Base class for SOCKS protocol errors raised inside a session."""


class ProtocolSyntaxError(SocksError):
    """Malformed or non-SOCKS5 input; the session closes without replying."""


class RequestRejected(SocksError):
    """A well-formed request the proxy refuses with a specific reply code."""

    reply_code = ReplyCode.GENERAL_FAILURE

    def __init__(self, message: str, reply_code: ReplyCode | None = None) -> None:
        super().__init__(message)
        if reply_code is not None:
            self.reply_code = reply_code


class UnsupportedCommand(RequestRejected):
    reply_code = ReplyCode.COMMAND_NOT_SUPPORTED


class UnsupportedAddressType(RequestRejected):
    reply_code = ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED


class InvalidTarget(RequestRejected):
    reply_code = ReplyCode.GENERAL_FAILURE


@dataclass(frozen=True)
class SocksRequest:
    command: int
    address_type: int
    address: bytes | ipaddress.IPv4Address | ipaddress.IPv6Address
    port: int

    @property
    def command_name(self) -> str:
        return _COMMAND_NAMES.get(self.command, "?")

    def __str__(self) -> str:
        if isinstance(self.address, bytes):
            address = self.address.decode("utf-8", errors="backslashreplace")
        else:
            address = str(self.address)
        return f"SOCKS {self.command_name} {address} {self.port}"


def encode_method_reply(method: int) -> bytes:
    """Method-selection message: VER, METHOD."""
    return struct.pack("BB", SOCKS_VERSION, method)


def encode_reply(code: ReplyCode | int, bind_address: str = "0.0.0.0", bind_port: int = 0) -> bytes:
    """
    Build a reply to a request: VER, REP, RSV, ATYP=IPv4, BND.ADDR, BND.PORT.

    The proxy's backends are Unix-domain sockets, so the bound address is a
    placeholder. Only IPv4 placeholders are produced.
    """
    rep = ReplyCode(code)
    packed = ipaddress.IPv4Address(bind_address).packed
    return _REPLY.pack(SOCKS_VERSION, rep, RSV, ATYP_IPV4, packed, bind_port)


async def _read_exactly(reader: asyncio.StreamReader, n: int) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as exc:
        raise ProtocolSyntaxError(
            f"Connection closed after {len(exc.partial)} of {n} expected bytes"
        ) from exc


async def read_greeting(reader: asyncio.StreamReader) -> bytes:
    """
    Read VER, NMETHODS, METHODS and return the method identifiers.

    Raises ProtocolSyntaxError on a version mismatch or a truncated greeting.
    """
    ver, nmethods = await _read_exactly(reader, 2)
    if ver != SOCKS_VERSION:
        raise ProtocolSyntaxError(f"Unsupported SOCKS version {ver:#04x} in greeting")
    return await _read_exactly(reader, nmethods)


async def read_request(reader: asyncio.StreamReader) -> SocksRequest:
    """
    Read VER, CMD, RSV, ATYP, DST.ADDR, DST.PORT.

    Raises ProtocolSyntaxError on a version mismatch or truncated request and
    UnsupportedAddressType when ATYP is not one RFC 1928 defines, since the
    length of the address that follows is then unknown. A non-CONNECT
    command with such an ATYP is reported as UnsupportedCommand instead.
    """
    ver, cmd, _rsv, atyp = _REQUEST_HEAD.unpack(await _read_exactly(reader, _REQUEST_HEAD.size))
    if ver != SOCKS_VERSION:
        raise ProtocolSyntaxError(f"Unsupported SOCKS version {ver:#04x} in request")

    address: bytes | ipaddress.IPv4Address | ipaddress.IPv6Address
    if atyp == ATYP_DOMAIN:
        (length,) = await _read_exactly(reader, 1)
        address = await _read_exactly(reader, length)
    elif atyp == ATYP_IPV4:
        address = ipaddress.IPv4Address(await _read_exactly(reader, 4))
    elif atyp == ATYP_IPV6:
        address = ipaddress.IPv6Address(await _read_exactly(reader, 16))
    elif cmd != CMD_CONNECT:
        raise UnsupportedCommand(f"Unsupported command {cmd:#04x}")
    else:
        raise UnsupportedAddressType(f"Unknown address type {atyp:#04x}")

    (port,) = _PORT.unpack(await _read_exactly(reader, _PORT.size))
    return SocksRequest(command=cmd, address_type=atyp, address=address, port=port)
