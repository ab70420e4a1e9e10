"""
CONNECT Tunnel Negotiator

Drives one CONNECT request through the upstream proxy and, once the
upstream answers 200, splices the client with the tunnel.

    NEGOTIATE_SENT --200--------------------------------> RESOLVED(success), splice
    NEGOTIATE_SENT --407 NTLM--> CHALLENGED -> AUTHENTICATE_SENT
    AUTHENTICATE_SENT --200-----------------------------> RESOLVED(success), splice
    any other status ----------------------------------> RESOLVED(failure), relayed

The authenticate leg opens a fresh upstream connection. No retry beyond
one challenge/response cycle.
"""

from __future__ import annotations

from typing import Any, Optional

import attrs
import structlog

from ntlmproxy.core.exceptions import ProtocolError, UpstreamAuthFailure, UpstreamConnectError
from ntlmproxy.core.types import (
    Headers,
    InboundRequest,
    ProxyConfig,
    Timeouts,
    UpstreamExchange,
    merge_headers,
)
from ntlmproxy.ntlm.auth_header import PROXY_AUTHORIZATION, AuthHeaderBuilder
from ntlmproxy.ntlm.handshake import Handshake
from ntlmproxy.proxy.legs import send_leg, strip_hop_by_hop
from ntlmproxy.transport.http import (
    CONNECTION_ESTABLISHED,
    serialize_response_head,
    simple_response,
    status_line_response,
)
from ntlmproxy.transport.splice import splice
from ntlmproxy.transport.stream import PeerStream
from ntlmproxy.transport.upstream import UpstreamRelay

logger = structlog.get_logger()


@attrs.define
class ConnectTunnelNegotiator:
    """
    Establishes CONNECT tunnels through the NTLM-protected upstream.

    Example:
        negotiator = ConnectTunnelNegotiator(config)
        handshake = await negotiator.negotiate(request, client)
        assert handshake.resolved
    """

    config: ProxyConfig
    builder: AuthHeaderBuilder = attrs.Factory(AuthHeaderBuilder)
    relay: UpstreamRelay = attrs.Factory(lambda self: UpstreamRelay(self.config), takes_self=True)

    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    async def negotiate(self, request: InboundRequest, client: PeerStream) -> Handshake:
        """
        Run the handshake for one CONNECT and serve the tunnel if it succeeds.

        The client connection is finished when this returns: either the
        tunnel ran to completion or a terminating response was written.
        """
        handshake = Handshake()
        log = self._logger.bind(target=request.target)

        negotiate = self.builder.build_negotiate_header(self.config)
        handshake.negotiate_sent("CONNECT", request.target)
        exchange = await self._leg(handshake, request, client, negotiate, "Connection Error")
        if exchange is None:
            return handshake

        if exchange.status == 200:
            handshake.responded(200, exchange.reason, success=True)
            await self._establish(exchange, request, client)
            return handshake

        if not exchange.has_ntlm_challenge:
            handshake.responded(exchange.status, exchange.reason, success=False)
            log.info("connect_rejected", status=exchange.status, reason=exchange.reason)
            await client.write(self._relayed_head(exchange))
            return handshake

        challenge = exchange.ntlm_challenge()
        handshake.challenged(challenge)
        try:
            authenticate = self.builder.build_authenticate_header(self.config, challenge)
        except ProtocolError as e:
            handshake.failed(e.message)
            log.warning("ntlm_challenge_invalid", error=e.message)
            await client.write(simple_response(407, f"Proxy authentication failed: {e.message}\n"))
            return handshake

        handshake.authenticate_sent()
        exchange = await self._leg(handshake, request, client, authenticate, "Authentication Error")
        if exchange is None:
            return handshake

        if exchange.status == 200:
            handshake.responded(200, exchange.reason, success=True)
            await self._establish(exchange, request, client)
            return handshake

        failure = UpstreamAuthFailure(exchange.status, exchange.reason)
        handshake.responded(exchange.status, exchange.reason, success=False)
        log.warning("upstream_auth_failed", error=failure.message)
        await client.write(self._relayed_head(exchange))
        return handshake

    async def _leg(
        self,
        handshake: Handshake,
        request: InboundRequest,
        client: PeerStream,
        authorization: str,
        error_reason: str,
    ) -> Optional[UpstreamExchange]:
        headers = merge_headers(request.headers, Headers([(PROXY_AUTHORIZATION, authorization)]))
        try:
            exchange = await send_leg(self.relay, client, "CONNECT", request.target, headers)
        except UpstreamConnectError as e:
            handshake.failed(e.message)
            await client.write(status_line_response(500, error_reason))
            return None
        if exchange is None:
            handshake.failed("client disconnected")
        return exchange

    async def _establish(
        self, exchange: UpstreamExchange, request: InboundRequest, client: PeerStream
    ) -> None:
        try:
            await client.write(CONNECTION_ESTABLISHED)
        except BaseException:
            await exchange.close()
            raise

        self._logger.info("tunnel_established", target=request.target, peer=client.peer)
        timeouts = self.config.timeouts
        result = await splice(
            client,
            exchange.reader,
            exchange.writer,
            idle=Timeouts.deadline(timeouts.idle),
            linger=Timeouts.deadline(timeouts.linger),
        )
        exchange.writer = None
        self._logger.info(
            "tunnel_closed",
            target=request.target,
            sent=result.upstream_bytes,
            received=result.client_bytes,
        )

    @staticmethod
    def _relayed_head(exchange: UpstreamExchange) -> bytes:
        """Upstream status line and headers, without a body, closing the connection."""
        headers = strip_hop_by_hop(exchange.headers)
        headers.add("Content-Length", "0")
        headers.add("Connection", "close")
        return serialize_response_head("HTTP/1.1", exchange.status, exchange.reason, headers)
