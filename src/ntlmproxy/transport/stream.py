"""
Client connection stream.

Wraps the asyncio reader/writer pair of an accepted client connection.
Bytes read while watching for a disconnect (an early TLS ClientHello, a
pipelined request) are pushed back and served before anything else.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import attrs
import structlog

logger = structlog.get_logger()

READ_SIZE = 65536


@attrs.define(eq=False)
class PeerStream:
    """Reader/writer pair with a push-back buffer."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    half_closed: bool = False
    _pending: bytearray = attrs.Factory(bytearray)
    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    @property
    def peer(self) -> Optional[Any]:
        return self.writer.get_extra_info("peername")

    @property
    def is_closing(self) -> bool:
        return self.writer.is_closing()

    def unread(self, data: bytes) -> None:
        """Push data back in front of the stream."""
        self._pending[:0] = data

    def take_pending(self) -> bytes:
        data = bytes(self._pending)
        self._pending.clear()
        return data

    async def read(self, n: int = READ_SIZE) -> bytes:
        if self._pending:
            data = bytes(self._pending[:n])
            del self._pending[:n]
            return data
        return await self.reader.read(n)

    async def readline(self) -> bytes:
        if self._pending:
            newline = self._pending.find(b"\n")
            if newline >= 0:
                line = bytes(self._pending[: newline + 1])
                del self._pending[: newline + 1]
                return line
            head = self.take_pending()
            return head + await self.reader.readline()
        return await self.reader.readline()

    async def readexactly(self, n: int) -> bytes:
        head = bytes(self._pending[:n])
        del self._pending[:n]
        if len(head) == n:
            return head
        try:
            return head + await self.reader.readexactly(n - len(head))
        except asyncio.IncompleteReadError as e:
            raise asyncio.IncompleteReadError(head + e.partial, n) from None

    async def wait_for_disconnect(self) -> bool:
        """
        Wait until the connection is lost or the peer sends data.

        Returns True if the transport failed (reset, aborted). Data that
        arrives first is pushed back and False is returned. A read EOF
        also returns False: the peer may only have shut its write side
        and still be waiting for the response, so a full close surfaces
        later as a failed write.
        """
        if self._pending or self.half_closed:
            return False
        try:
            data = await self.reader.read(READ_SIZE)
        except (ConnectionError, OSError):
            return True
        if not data:
            self.half_closed = True
            self._logger.debug("client_half_closed")
            return False
        self.unread(data)
        return False

    async def write(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    async def close(self) -> None:
        if self.writer.is_closing():
            return
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError) as e:
            self._logger.debug("client_close_error", peer=self.peer, error=str(e))
