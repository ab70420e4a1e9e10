"""
Full-duplex tunnel splice.

Two independent copy loops move bytes client -> upstream and
upstream -> client. When a loop reaches EOF it half-closes its
destination; the opposite loop then gets a bounded linger period to
finish before both connections are closed.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

import attrs
import structlog

from ntlmproxy.transport.stream import READ_SIZE, PeerStream

logger = structlog.get_logger()

Reader = Callable[[int], Awaitable[bytes]]


@attrs.define
class SpliceResult:
    """Byte counts per direction."""

    upstream_bytes: int = 0
    client_bytes: int = 0


@attrs.define
class _Activity:
    """Last time either direction moved data."""

    last: float = attrs.Factory(lambda: asyncio.get_running_loop().time())

    def touch(self) -> None:
        self.last = asyncio.get_running_loop().time()

    def idle_for(self) -> float:
        return asyncio.get_running_loop().time() - self.last


async def _pump(
    read: Reader,
    writer: asyncio.StreamWriter,
    activity: _Activity,
    idle: Optional[float],
    direction: str,
) -> int:
    copied = 0
    while True:
        try:
            data = await asyncio.wait_for(read(READ_SIZE), timeout=idle)
        except asyncio.TimeoutError:
            if idle is not None and activity.idle_for() < idle:
                continue
            logger.info("tunnel_idle_timeout", direction=direction, idle=idle)
            return copied
        except OSError as e:
            logger.debug("tunnel_read_error", direction=direction, error=str(e))
            return copied
        if not data:
            break
        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            logger.debug("tunnel_write_error", direction=direction, error=str(e))
            return copied
        copied += len(data)
        activity.touch()

    # Source reached EOF: propagate it as a half-close where the transport allows
    try:
        if writer.can_write_eof() and not writer.is_closing():
            writer.write_eof()
    except OSError as e:
        logger.debug("tunnel_write_eof_error", direction=direction, error=str(e))
    return copied


async def _close(writer: asyncio.StreamWriter) -> None:
    if writer.is_closing():
        return
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug("tunnel_close_error", error=str(e))


async def splice(
    client: PeerStream,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
    idle: Optional[float] = None,
    linger: Optional[float] = None,
) -> SpliceResult:
    """
    Copy bytes both ways until the tunnel ends, then close both sides.

    Bytes already pushed back into the client stream and bytes buffered
    in upstream_reader after the CONNECT response head are delivered first.

    Args:
        client: Client connection
        upstream_reader: Tunnel read side
        upstream_writer: Tunnel write side
        idle: Seconds without traffic in either direction before closing
        linger: Seconds the surviving direction may run after the other
            reached EOF; None waits for it indefinitely
    """
    activity = _Activity()
    outbound = asyncio.ensure_future(
        _pump(client.read, upstream_writer, activity, idle, "client_to_upstream")
    )
    inbound = asyncio.ensure_future(
        _pump(upstream_reader.read, client.writer, activity, idle, "upstream_to_client")
    )
    try:
        _, pending = await asyncio.wait({outbound, inbound}, return_when=asyncio.FIRST_COMPLETED)
        if pending:
            _, pending = await asyncio.wait(pending, timeout=linger)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    finally:
        for task in (outbound, inbound):
            if not task.done():
                task.cancel()
        await _close(upstream_writer)
        await client.close()

    result = SpliceResult()
    if not outbound.cancelled():
        result.upstream_bytes = outbound.result()
    if not inbound.cancelled():
        result.client_bytes = inbound.result()
    return result
