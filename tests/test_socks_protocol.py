"""Tests for SOCKS5 reply encoding and request parsing."""

from __future__ import annotations

import asyncio
import ipaddress

import pytest

from udsocks.socks_protocol import (
    ATYP_DOMAIN,
    ATYP_IPV4,
    ATYP_IPV6,
    AUTH_NO_ACCEPTABLE,
    AUTH_NONE,
    CMD_BIND,
    CMD_CONNECT,
    ProtocolSyntaxError,
    ReplyCode,
    UnsupportedAddressType,
    UnsupportedCommand,
    encode_method_reply,
    encode_reply,
    read_greeting,
    read_request,
)


def _reader(data: bytes, *, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


class TestEncodeReply:
    def test_success_reply_is_wire_exact(self):
        assert encode_reply(ReplyCode.SUCCEEDED) == bytes.fromhex("05000001000000000000")

    def test_host_unreachable_reply(self):
        assert encode_reply(ReplyCode.HOST_UNREACHABLE) == bytes.fromhex("05040001000000000000")

    @pytest.mark.parametrize(
        ("code", "value"),
        [
            (ReplyCode.SUCCEEDED, 0x00),
            (ReplyCode.GENERAL_FAILURE, 0x01),
            (ReplyCode.CONNECTION_NOT_ALLOWED, 0x02),
            (ReplyCode.NETWORK_UNREACHABLE, 0x03),
            (ReplyCode.HOST_UNREACHABLE, 0x04),
            (ReplyCode.CONNECTION_REFUSED, 0x05),
            (ReplyCode.COMMAND_NOT_SUPPORTED, 0x07),
            (ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED, 0x08),
        ],
    )
    def test_reply_codes_match_rfc1928(self, code, value):
        reply = encode_reply(code)
        assert len(reply) == 10
        assert reply[1] == value
        assert reply[0] == 5 and reply[2] == 0 and reply[3] == ATYP_IPV4

    def test_rejects_unknown_code(self):
        with pytest.raises(ValueError):
            encode_reply(0x06)

    def test_bound_address_placeholder_can_be_set(self):
        reply = encode_reply(ReplyCode.SUCCEEDED, "127.0.0.1", 1080)
        assert reply[4:8] == bytes([127, 0, 0, 1])
        assert reply[8:] == (1080).to_bytes(2, "big")


class TestMethodReply:
    def test_no_authentication(self):
        assert encode_method_reply(AUTH_NONE) == b"\x05\x00"

    def test_no_acceptable_method(self):
        assert encode_method_reply(AUTH_NO_ACCEPTABLE) == b"\x05\xff"


class TestReadGreeting:
    @pytest.mark.asyncio
    async def test_returns_methods(self):
        assert await read_greeting(_reader(b"\x05\x02\x00\x02")) == b"\x00\x02"

    @pytest.mark.asyncio
    async def test_empty_method_list(self):
        assert await read_greeting(_reader(b"\x05\x00")) == b""

    @pytest.mark.asyncio
    async def test_wrong_version(self):
        with pytest.raises(ProtocolSyntaxError):
            await read_greeting(_reader(b"\x04\x01\x00"))

    @pytest.mark.asyncio
    async def test_truncated_method_list(self):
        with pytest.raises(ProtocolSyntaxError):
            await read_greeting(_reader(b"\x05\x03\x00"))

    @pytest.mark.asyncio
    async def test_http_request_is_not_a_greeting(self):
        with pytest.raises(ProtocolSyntaxError):
            await read_greeting(_reader(b"GET / HTTP/1.1\r\n\r\n"))

    @pytest.mark.asyncio
    async def test_does_not_consume_request_bytes(self):
        reader = _reader(b"\x05\x01\x00\x05\x01", eof=False)
        await read_greeting(reader)
        assert await reader.readexactly(2) == b"\x05\x01"


class TestReadRequest:
    @pytest.mark.asyncio
    async def test_domain_connect(self):
        data = b"\x05\x01\x00\x03\x09myapp.foo\x00\x50"
        request = await read_request(_reader(data))
        assert request.command == CMD_CONNECT
        assert request.address_type == ATYP_DOMAIN
        assert request.address == b"myapp.foo"
        assert request.port == 80
        assert str(request) == "SOCKS CONNECT myapp.foo 80"

    @pytest.mark.asyncio
    async def test_ipv4_address(self):
        request = await read_request(_reader(b"\x05\x01\x00\x01\x7f\x00\x00\x01\x1f\x90"))
        assert request.address_type == ATYP_IPV4
        assert request.address == ipaddress.IPv4Address("127.0.0.1")
        assert request.port == 8080

    @pytest.mark.asyncio
    async def test_ipv6_address(self):
        raw = ipaddress.IPv6Address("::1").packed
        request = await read_request(_reader(b"\x05\x01\x00\x04" + raw + b"\x00\x16"))
        assert request.address_type == ATYP_IPV6
        assert request.address == ipaddress.IPv6Address("::1")
        assert request.port == 22

    @pytest.mark.asyncio
    async def test_bind_command_is_parsed(self):
        request = await read_request(_reader(b"\x05\x02\x00\x03\x01a\x00\x01"))
        assert request.command == CMD_BIND
        assert str(request).startswith("SOCKS BIND")

    @pytest.mark.asyncio
    async def test_unknown_address_type(self):
        with pytest.raises(UnsupportedAddressType) as info:
            await read_request(_reader(b"\x05\x01\x00\x09\x00\x00"))
        assert info.value.reply_code == ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED

    @pytest.mark.asyncio
    async def test_unknown_address_type_with_other_command(self):
        with pytest.raises(UnsupportedCommand) as info:
            await read_request(_reader(b"\x05\x02\x00\x07", eof=False))
        assert info.value.reply_code == ReplyCode.COMMAND_NOT_SUPPORTED

    @pytest.mark.asyncio
    async def test_wrong_version(self):
        with pytest.raises(ProtocolSyntaxError):
            await read_request(_reader(b"\x04\x01\x00\x03\x01a\x00\x50"))

    @pytest.mark.asyncio
    async def test_truncated_hostname(self):
        with pytest.raises(ProtocolSyntaxError):
            await read_request(_reader(b"\x05\x01\x00\x03\x09myapp"))

    @pytest.mark.asyncio
    async def test_missing_port(self):
        with pytest.raises(ProtocolSyntaxError):
            await read_request(_reader(b"\x05\x01\x00\x03\x01a\x00"))

    @pytest.mark.asyncio
    async def test_non_utf8_hostname_is_kept_verbatim(self):
        request = await read_request(_reader(b"\x05\x01\x00\x03\x02\xff\xfe\x00\x50"))
        assert request.address == b"\xff\xfe"
