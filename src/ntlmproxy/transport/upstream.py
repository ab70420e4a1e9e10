"""
ntlm-proxy Upstream Relay

Network leg to the fixed upstream proxy. Each call to send() opens a new
TCP connection, writes one request and reads the response head:

- CONNECT answered with 200: the open connection becomes the tunnel
- CONNECT answered otherwise: the connection is closed, only the head
  is returned
- Any other method: the response body is exposed as an async iterator
  over its wire bytes; the caller closes the exchange when done

The relay never retries. A refused connection, a reset before the
response head, an unparsable head and an expired connect/response
deadline all raise UpstreamConnectError.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import attrs
import structlog

from ntlmproxy.core.exceptions import ProtocolError, UpstreamConnectError
from ntlmproxy.core.types import Headers, ProxyConfig, Timeouts, UpstreamExchange
from ntlmproxy.transport.http import (
    ResponseHead,
    iter_response_body,
    read_response_head,
    response_is_delimited,
    serialize_request_head,
)

logger = structlog.get_logger()


@attrs.define
class UpstreamRelay:
    """
    Sends single requests to the upstream proxy.

    Example:
        relay = UpstreamRelay(config)
        exchange = await relay.send("CONNECT", "example.com:443", headers)
        if exchange.is_tunnel:
            ...
    """

    config: ProxyConfig

    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    @property
    def host(self) -> str:
        return self.config.upstream_host

    @property
    def port(self) -> int:
        return self.config.upstream_port

    async def send(
        self,
        method: str,
        target: str,
        headers: Headers,
        body: Optional[bytes] = None,
    ) -> UpstreamExchange:
        """
        Issue one request to the upstream proxy.

        Args:
            method: Request method
            target: Authority for CONNECT, absolute URL otherwise
            headers: Complete header block to send
            body: Buffered request body, sent after the head

        Returns:
            UpstreamExchange for the response

        Raises:
            UpstreamConnectError: If the upstream is unreachable or fails
                before a response head is read
        """
        reader, writer = await self._open()
        try:
            head = await self._exchange(reader, writer, method, target, headers, body)
        except BaseException:
            # Cancelled or failed before a head: drop the socket immediately
            writer.close()
            raise

        self._logger.debug(
            "upstream_response",
            method=method,
            target=target,
            status=head.status,
            reason=head.reason,
        )

        exchange = UpstreamExchange(
            status=head.status,
            reason=head.reason,
            headers=head.headers,
            version=head.version,
        )
        if method == "CONNECT":
            if head.status == 200:
                exchange.reader = reader
                exchange.writer = writer
            else:
                await _close_quietly(writer)
            return exchange

        exchange.reader = reader
        exchange.writer = writer
        exchange.body = iter_response_body(
            reader, method, head, Timeouts.deadline(self.config.timeouts.idle)
        )
        exchange.will_close = not response_is_delimited(method, head)
        return exchange

    async def _open(self):
        timeout = Timeouts.deadline(self.config.timeouts.connect)
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise self._error(f"connect timed out after {timeout}s") from None
        except OSError as e:
            raise self._error(e.strerror or str(e)) from e

    async def _exchange(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        method: str,
        target: str,
        headers: Headers,
        body: Optional[bytes],
    ) -> ResponseHead:
        timeout = Timeouts.deadline(self.config.timeouts.response)
        try:
            writer.write(serialize_request_head(method, target, "HTTP/1.1", headers))
            if body:
                writer.write(body)
            await writer.drain()
            return await asyncio.wait_for(read_response_head(reader), timeout=timeout)
        except asyncio.TimeoutError:
            raise self._error(f"no response within {timeout}s") from None
        except ProtocolError as e:
            raise self._error(f"invalid response: {e.message}") from e
        except OSError as e:
            raise self._error(e.strerror or str(e)) from e

    def _error(self, reason: str) -> UpstreamConnectError:
        self._logger.warning("upstream_unavailable", host=self.host, port=self.port, reason=reason)
        return UpstreamConnectError(self.host, self.port, reason)


async def _close_quietly(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError as e:
        logger.debug("upstream_close_error", error=str(e))
