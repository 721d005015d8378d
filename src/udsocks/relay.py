"""
Full-duplex byte relay between a SOCKS client and its backend.

Each direction runs in its own task. End of input on one side becomes a
half-close (write EOF) on the other side while the opposite direction keeps
draining. A transport error in either direction, or an idle timeout, cancels
both. Closing the transports is left to the caller.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field

from udsocks.config import DEFAULT_RELAY_BUFFER_SIZE
from udsocks.debug import log_debug


class RelayIdleTimeout(Exception):
    """Neither direction moved data within the idle timeout."""


@dataclass
class RelayDirection:
    name: str
    bytes_copied: int = 0
    eof: bool = False


@dataclass
class RelayResult:
    upstream: RelayDirection
    downstream: RelayDirection
    error: BaseException | None = None
    last_activity: float = field(default_factory=time.monotonic)

    @property
    def completed(self) -> bool:
        return self.error is None and self.upstream.eof and self.downstream.eof


async def _pipe(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    direction: RelayDirection,
    result: RelayResult,
    buffer_size: int,
) -> None:
    while True:
        data = await reader.read(buffer_size)
        if not data:
            break
        writer.write(data)
        await writer.drain()
        direction.bytes_copied += len(data)
        result.last_activity = time.monotonic()

    direction.eof = True
    if writer.can_write_eof() and not writer.is_closing():
        writer.write_eof()
    log_debug(f"Relay {direction.name} reached end of stream after {direction.bytes_copied} bytes")


async def _watch_idle(result: RelayResult, idle_timeout: float) -> None:
    while True:
        remaining = result.last_activity + idle_timeout - time.monotonic()
        if remaining <= 0:
            raise RelayIdleTimeout(f"No data relayed for {idle_timeout}s")
        await asyncio.sleep(remaining)


async def relay(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    backend_reader: asyncio.StreamReader,
    backend_writer: asyncio.StreamWriter,
    *,
    buffer_size: int = DEFAULT_RELAY_BUFFER_SIZE,
    idle_timeout: float | None = None,
) -> RelayResult:
    """
    Pump bytes both ways until both directions reached end of stream.

    Transport errors and idle timeouts are recorded on the returned result
    rather than raised.
    """
    result = RelayResult(
        upstream=RelayDirection("client->backend"),
        downstream=RelayDirection("backend->client"),
    )
    pipes = {
        asyncio.ensure_future(
            _pipe(client_reader, backend_writer, result.upstream, result, buffer_size)
        ),
        asyncio.ensure_future(
            _pipe(backend_reader, client_writer, result.downstream, result, buffer_size)
        ),
    }
    waiting = set(pipes)
    if idle_timeout is not None:
        waiting.add(asyncio.ensure_future(_watch_idle(result, idle_timeout)))

    try:
        while pipes:
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)
            waiting -= done
            pipes -= done
            errors = [exc for exc in (task.exception() for task in done) if exc is not None]
            if errors:
                raise errors[0]
    except (OSError, RelayIdleTimeout) as exc:
        result.error = exc
        log_debug(f"Relay aborted: {exc}", level="error")
    finally:
        for task in waiting:
            task.cancel()
        if waiting:
            await asyncio.gather(*waiting, return_exceptions=True)

    return result
