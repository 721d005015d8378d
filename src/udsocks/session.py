"""
Per-connection SOCKS5 session: handshake state machine followed by the relay.

States only ever move forward. Each non-terminal state has exactly one
transition method; the terminal states are CLOSED, REJECTED and FAILED.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import itertools

from udsocks.addressing import Target, target_path
from udsocks.config import ProxyConfig
from udsocks.debug import log_debug
from udsocks.relay import RelayResult, relay
from udsocks.socks_protocol import (
    ATYP_DOMAIN,
    AUTH_NO_ACCEPTABLE,
    AUTH_NONE,
    CMD_CONNECT,
    ProtocolSyntaxError,
    ReplyCode,
    RequestRejected,
    encode_method_reply,
    encode_reply,
    read_greeting,
    read_request,
)
from udsocks.upstream import BackendConnectError, BackendConnector, connect_backend

_session_ids = itertools.count(1)


class HandshakeState(enum.IntEnum):
    AWAIT_GREETING = 1
    METHOD_CHOSEN = 2
    AWAIT_REQUEST = 3
    RESOLVING = 4
    CONNECTING = 5
    CONNECTED = 6
    RELAYING = 7
    CLOSED = 8
    REJECTED = 9
    FAILED = 10

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {HandshakeState.CLOSED, HandshakeState.REJECTED, HandshakeState.FAILED}
)


class SocksSession:
    """
    Drive one accepted client connection from greeting to teardown.

    The session owns both transports and closes them exactly once when
    ``run()`` returns, whatever the outcome.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        config: ProxyConfig,
        *,
        connector: BackendConnector = connect_backend,
    ) -> None:
        self.id = next(_session_ids)
        self.config = config
        self._reader = reader
        self._writer = writer
        self._connector = connector

        self.state = HandshakeState.AWAIT_GREETING
        self.method: int | None = None
        self.target: Target | None = None
        self.backend_path: bytes | None = None
        self.reply_code: ReplyCode | None = None
        self.relay_result: RelayResult | None = None
        self._backend_reader: asyncio.StreamReader | None = None
        self._backend_writer: asyncio.StreamWriter | None = None

        self._transitions = {
            HandshakeState.AWAIT_GREETING: self._await_greeting,
            HandshakeState.METHOD_CHOSEN: self._choose_method,
            HandshakeState.AWAIT_REQUEST: self._await_request,
            HandshakeState.RESOLVING: self._resolve,
            HandshakeState.CONNECTING: self._connect,
            HandshakeState.CONNECTED: self._confirm,
            HandshakeState.RELAYING: self._relay,
        }

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def run(self) -> HandshakeState:
        try:
            try:
                await asyncio.wait_for(self._handshake(), self.config.handshake_timeout)
            except asyncio.TimeoutError:
                log_debug(f"[{self.id}] Handshake timed out in state {self.state.name}")
                return self.state
            if not self.state.is_terminal:
                await self._step()
        except (OSError, asyncio.IncompleteReadError) as exc:
            log_debug(f"[{self.id}] Transport error in state {self.state.name}: {exc}")
        finally:
            await self._close()
        return self.state

    async def _handshake(self) -> None:
        while self.state < HandshakeState.RELAYING:
            await self._step()

    async def _step(self) -> None:
        await self._transitions[self.state]()

    def _advance(self, new_state: HandshakeState) -> None:
        if new_state <= self.state:
            raise RuntimeError(f"Illegal transition {self.state.name} -> {new_state.name}")
        self.state = new_state

    async def _send(self, data: bytes) -> None:
        self._writer.write(data)
        await self._writer.drain()

    async def _fail(self, code: ReplyCode) -> None:
        log_debug(f"[{self.id}] SOCKS reply, {code.name.lower().replace('_', ' ')}")
        self.reply_code = code
        self._advance(HandshakeState.FAILED)
        await self._send(encode_reply(code))

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _await_greeting(self) -> None:
        try:
            methods = await read_greeting(self._reader)
        except ProtocolSyntaxError as exc:
            log_debug(f"[{self.id}] Could not read SOCKS greeting: {exc}")
            self._advance(HandshakeState.REJECTED)
            return

        if AUTH_NONE not in methods:
            log_debug(f"[{self.id}] SOCKS reply, no acceptable authentication method")
            self._advance(HandshakeState.REJECTED)
            await self._send(encode_method_reply(AUTH_NO_ACCEPTABLE))
            return

        self.method = AUTH_NONE
        self._advance(HandshakeState.METHOD_CHOSEN)

    async def _choose_method(self) -> None:
        await self._send(encode_method_reply(AUTH_NONE))
        self._advance(HandshakeState.AWAIT_REQUEST)

    async def _await_request(self) -> None:
        try:
            request = await read_request(self._reader)
        except ProtocolSyntaxError as exc:
            log_debug(f"[{self.id}] Could not read SOCKS request: {exc}")
            self._advance(HandshakeState.REJECTED)
            return
        except RequestRejected as exc:
            log_debug(f"[{self.id}] {exc}")
            await self._fail(exc.reply_code)
            return

        log_debug(f"[{self.id}] {request}")

        if request.command != CMD_CONNECT:
            await self._fail(ReplyCode.COMMAND_NOT_SUPPORTED)
            return
        if request.address_type != ATYP_DOMAIN or not isinstance(request.address, bytes):
            await self._fail(ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED)
            return

        try:
            self.target = Target(request.address, request.port)
        except RequestRejected as exc:
            log_debug(f"[{self.id}] {exc}")
            await self._fail(exc.reply_code)
            return

        self._advance(HandshakeState.RESOLVING)

    async def _resolve(self) -> None:
        assert self.target is not None
        self.backend_path = target_path(self.config.directory, self.target)
        self._advance(HandshakeState.CONNECTING)

    async def _connect(self) -> None:
        assert self.backend_path is not None
        try:
            self._backend_reader, self._backend_writer = await self._connector(
                self.backend_path, timeout=self.config.connect_timeout
            )
        except BackendConnectError as exc:
            log_debug(f"[{self.id}] Backend connect failed: {exc}")
            await self._fail(exc.reply_code)
            return
        self._advance(HandshakeState.CONNECTED)

    async def _confirm(self) -> None:
        log_debug(f"[{self.id}] SOCKS reply, succeeded")
        self.reply_code = ReplyCode.SUCCEEDED
        await self._send(encode_reply(ReplyCode.SUCCEEDED))
        self._advance(HandshakeState.RELAYING)

    async def _relay(self) -> None:
        assert self._backend_reader is not None and self._backend_writer is not None
        self.relay_result = await relay(
            self._reader,
            self._writer,
            self._backend_reader,
            self._backend_writer,
            buffer_size=self.config.relay_buffer_size,
            idle_timeout=self.config.idle_timeout,
        )
        self._advance(HandshakeState.CLOSED)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _close(self) -> None:
        writers = [self._writer]
        if self._backend_writer is not None:
            writers.append(self._backend_writer)
        for writer in writers:
            writer.close()
        for writer in writers:
            with contextlib.suppress(OSError):
                await writer.wait_closed()
