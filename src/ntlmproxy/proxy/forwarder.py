"""
HTTP Request Forwarder

Drives one non-CONNECT request through the upstream proxy:

1. Send the request with the NTLM negotiate header merged into the
   client headers.
2. On 407 with an NTLM challenge, send the same method/target/body again
   with the authenticate header; whatever that leg returns is delivered.
3. Any other first response is delivered unmodified.
4. An unreachable upstream yields 502 and the client connection closes.

The request body is buffered before the first leg so it can be replayed.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

import attrs
import structlog

from ntlmproxy.core.exceptions import ProtocolError, UpstreamAuthFailure, UpstreamConnectError
from ntlmproxy.core.types import (
    Headers,
    InboundRequest,
    ProxyConfig,
    UpstreamExchange,
    merge_headers,
)
from ntlmproxy.ntlm.auth_header import PROXY_AUTHORIZATION, AuthHeaderBuilder
from ntlmproxy.ntlm.handshake import Handshake
from ntlmproxy.proxy.legs import send_leg, strip_hop_by_hop
from ntlmproxy.transport.http import serialize_response_head, simple_response
from ntlmproxy.transport.stream import PeerStream
from ntlmproxy.transport.upstream import UpstreamRelay

logger = structlog.get_logger()

_METHODS_WITH_BODY = frozenset({"POST", "PUT", "PATCH"})


def build_upstream_headers(request: InboundRequest) -> Headers:
    """
    Client headers as sent upstream, with the body framed by an explicit
    Content-Length.
    """
    headers = request.headers.copy()
    for name in ("Transfer-Encoding", "Proxy-Connection", "Keep-Alive", "Expect"):
        headers.remove(name)
    if request.body or "Content-Length" in request.headers or request.method in _METHODS_WITH_BODY:
        headers.replace("Content-Length", str(len(request.body)))
    else:
        headers.remove("Content-Length")
    return headers


@attrs.define
class HttpRequestForwarder:
    """
    Forwards plain HTTP requests, answering one NTLM challenge.

    Example:
        forwarder = HttpRequestForwarder(config)
        keep_alive = await forwarder.forward(request, client)
    """

    config: ProxyConfig
    builder: AuthHeaderBuilder = attrs.Factory(AuthHeaderBuilder)
    relay: UpstreamRelay = attrs.Factory(lambda self: UpstreamRelay(self.config), takes_self=True)

    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    async def forward(self, request: InboundRequest, client: PeerStream) -> bool:
        """
        Relay one request and deliver the final response to the client.

        Returns:
            True if the client connection may carry another request
        """
        handshake = Handshake()
        base_headers = build_upstream_headers(request)
        log = self._logger.bind(method=request.method, target=request.target)

        negotiate = self.builder.build_negotiate_header(self.config)
        handshake.negotiate_sent(request.method, request.target)
        exchange = await self._leg(handshake, request, client, base_headers, negotiate)
        if exchange is None:
            return False

        if exchange.has_ntlm_challenge:
            challenge = exchange.ntlm_challenge()
            await exchange.close()
            handshake.challenged(challenge)
            try:
                authenticate = self.builder.build_authenticate_header(self.config, challenge)
            except ProtocolError as e:
                handshake.failed(e.message)
                log.warning("ntlm_challenge_invalid", error=e.message)
                await client.write(
                    simple_response(407, f"Proxy authentication failed: {e.message}\n")
                )
                return False

            handshake.authenticate_sent()
            exchange = await self._leg(handshake, request, client, base_headers, authenticate)
            if exchange is None:
                return False
            if exchange.status == 407:
                failure = UpstreamAuthFailure(exchange.status, exchange.reason)
                log.warning("upstream_auth_failed", error=failure.message)

        handshake.responded(exchange.status, exchange.reason, success=exchange.status != 407)
        return await self._deliver(exchange, request, client)

    async def _leg(
        self,
        handshake: Handshake,
        request: InboundRequest,
        client: PeerStream,
        base_headers: Headers,
        authorization: str,
    ) -> Optional[UpstreamExchange]:
        headers = merge_headers(base_headers, Headers([(PROXY_AUTHORIZATION, authorization)]))
        try:
            exchange = await send_leg(
                self.relay, client, request.method, request.target, headers, request.body
            )
        except UpstreamConnectError as e:
            handshake.failed(e.message)
            await client.write(simple_response(502, f"Proxy Error: {e.reason}\n"))
            return None
        if exchange is None:
            handshake.failed("client disconnected")
        return exchange

    async def _deliver(
        self, exchange: UpstreamExchange, request: InboundRequest, client: PeerStream
    ) -> bool:
        keep_alive = not (request.wants_close or exchange.will_close)
        headers = strip_hop_by_hop(exchange.headers)
        for name in ("Content-Length", "Transfer-Encoding"):
            for value in exchange.headers.get_all(name):
                headers.add(name, value)
        headers.replace("Connection", "keep-alive" if keep_alive else "close")

        try:
            await client.write(
                serialize_response_head(exchange.version, exchange.status, exchange.reason, headers)
            )
            if exchange.body is not None:
                async for chunk in exchange.body:
                    await client.write(chunk)
        except (ProtocolError, asyncio.TimeoutError) as e:
            self._logger.warning(
                "response_relay_aborted",
                target=request.target,
                error=str(e) or type(e).__name__,
            )
            return False
        finally:
            await exchange.close()

        self._logger.debug(
            "response_delivered",
            method=request.method,
            target=request.target,
            status=exchange.status,
            keep_alive=keep_alive,
        )
        return keep_alive
