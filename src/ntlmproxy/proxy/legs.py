"""
Shared helpers for driving one upstream leg on behalf of a client.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from ntlmproxy.core.types import Headers, UpstreamExchange
from ntlmproxy.transport.stream import PeerStream
from ntlmproxy.transport.upstream import UpstreamRelay

logger = structlog.get_logger()

# Fields describing a single connection, never relayed
HOP_BY_HOP = (
    "Connection",
    "Keep-Alive",
    "Proxy-Connection",
    "Transfer-Encoding",
    "Content-Length",
)


async def send_leg(
    relay: UpstreamRelay,
    client: PeerStream,
    method: str,
    target: str,
    headers: Headers,
    body: Optional[bytes] = None,
) -> Optional[UpstreamExchange]:
    """
    Send one request upstream while watching the client connection.

    Returns None if the client connection was lost before the response
    head arrived; the pending upstream request is then cancelled and its
    connection released. Bytes the client sends in the meantime are
    pushed back into the client stream. A client that only shut its
    write side keeps waiting for the response.

    Raises:
        UpstreamConnectError: Propagated from the relay
    """
    send = asyncio.ensure_future(relay.send(method, target, headers, body))
    watch = asyncio.ensure_future(client.wait_for_disconnect())
    try:
        done, _ = await asyncio.wait({send, watch}, return_when=asyncio.FIRST_COMPLETED)
        if send in done:
            return send.result()
        if not watch.result():
            return await send
        logger.info("client_disconnected", method=method, target=target)
        send.cancel()
        await asyncio.gather(send, return_exceptions=True)
        if not send.cancelled() and send.exception() is None:
            await send.result().close()
        return None
    finally:
        for task in (send, watch):
            if not task.done():
                task.cancel()
        await asyncio.gather(send, watch, return_exceptions=True)


def strip_hop_by_hop(headers: Headers) -> Headers:
    stripped = headers.copy()
    for name in HOP_BY_HOP:
        stripped.remove(name)
    return stripped
