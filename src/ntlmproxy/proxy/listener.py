"""
ntlm-proxy Listener

Accepts client connections (plain or TLS-terminated) and routes each
request: CONNECT to the ConnectTunnelNegotiator, everything else to the
HttpRequestForwarder. Plain HTTP connections are reused for further
requests while both sides keep them alive.

Every connection runs in its own task. Errors are contained to that
connection; nothing a client or the upstream does can stop the listener.
"""

from __future__ import annotations

import asyncio
import ssl
from typing import Any, Optional, Set

import attrs
import structlog

from ntlmproxy.core.exceptions import MalformedRequestError, RequestBodyTooLarge
from ntlmproxy.core.types import InboundRequest, ProxyConfig, RequestKind, Timeouts
from ntlmproxy.ntlm.auth_header import AuthHeaderBuilder
from ntlmproxy.proxy.forwarder import HttpRequestForwarder
from ntlmproxy.proxy.negotiator import ConnectTunnelNegotiator
from ntlmproxy.transport.http import (
    MAX_HEAD_SIZE,
    read_request_body,
    read_request_head,
    simple_response,
)
from ntlmproxy.transport.stream import PeerStream

logger = structlog.get_logger()

CONTINUE = b"HTTP/1.1 100 Continue\r\n\r\n"


@attrs.define
class ProxyListener:
    """
    Listening socket plus the set of live connection handlers.

    Example:
        listener = ProxyListener(config, ssl_context=build_server_ssl_context(config))
        await listener.start()
        ...
        listener.stop_accepting()
        await listener.drain(grace=5.0)
        await listener.close()
    """

    config: ProxyConfig
    ssl_context: Optional[ssl.SSLContext] = None
    builder: AuthHeaderBuilder = attrs.Factory(AuthHeaderBuilder)
    forwarder: HttpRequestForwarder = attrs.Factory(
        lambda self: HttpRequestForwarder(self.config, builder=self.builder), takes_self=True
    )
    negotiator: ConnectTunnelNegotiator = attrs.Factory(
        lambda self: ConnectTunnelNegotiator(self.config, builder=self.builder), takes_self=True
    )

    _server: Optional[asyncio.AbstractServer] = None
    _handlers: Set[asyncio.Task] = attrs.Factory(set)
    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        if self._server is None or not self._server.sockets:
            raise RuntimeError("Listener is not running")
        return self._server.sockets[0].getsockname()[1]

    @property
    def active_connections(self) -> int:
        return len(self._handlers)

    @property
    def scheme(self) -> str:
        return "https" if self.ssl_context is not None else "http"

    async def start(self) -> None:
        self._server = await asyncio.start_server(
            self._handle_client,
            self.config.listen_host,
            self.config.listen_port,
            ssl=self.ssl_context,
            limit=MAX_HEAD_SIZE,
        )
        self._logger.info(
            "listener_started",
            url=f"{self.scheme}://{self.config.listen_host}:{self.port}",
        )

    def stop_accepting(self) -> None:
        if self._server is not None:
            self._server.close()
            self._logger.info("listener_stopped_accepting", active=self.active_connections)

    async def drain(self, grace: Optional[float]) -> int:
        """
        Wait for live handlers, cancelling whatever is left after grace seconds.

        Returns:
            Number of handlers that had to be cancelled
        """
        handlers = set(self._handlers)
        if not handlers:
            return 0
        _, pending = await asyncio.wait(handlers, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            self._logger.warning("connections_cancelled", count=len(pending))
        return len(pending)

    async def close(self) -> None:
        if self._server is None:
            return
        self._server.close()
        await self._server.wait_closed()
        self._server = None
        self._logger.info("listener_closed")

    # =========================================================================
    # CONNECTION HANDLING
    # =========================================================================

    async def _handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)
        client = PeerStream(reader, writer)
        log = self._logger.bind(peer=client.peer)
        log.debug("client_connected")
        try:
            await self._serve(client)
        except (ConnectionError, OSError) as e:
            log.debug("client_connection_lost", error=str(e))
        except asyncio.TimeoutError:
            log.debug("client_timeout")
        except Exception:
            log.exception("connection_handler_failed")
        finally:
            if task is not None:
                self._handlers.discard(task)
            await client.close()
            log.debug("client_closed")

    async def _serve(self, client: PeerStream) -> None:
        timeouts = self.config.timeouts
        while True:
            try:
                request = await asyncio.wait_for(
                    read_request_head(client),
                    timeout=Timeouts.deadline(timeouts.client_header),
                )
            except MalformedRequestError as e:
                self._logger.info("malformed_request", peer=client.peer, error=e.message)
                await client.write(simple_response(400, f"{e.message}\n"))
                return
            if request is None:
                return

            self._logger.debug("request_received", method=request.method, target=request.target)
            if request.kind is RequestKind.CONNECT:
                await self.negotiator.negotiate(request, client)
                return

            request = await self._read_body(request, client)
            if request is None:
                return
            if not await self.forwarder.forward(request, client):
                return
            if request.wants_close:
                return

    async def _read_body(
        self, request: InboundRequest, client: PeerStream
    ) -> Optional[InboundRequest]:
        """Buffer the request body, answering 400/413 when it cannot be replayed."""
        if request.headers.has_token("Expect", "100-continue"):
            await client.write(CONTINUE)
        try:
            body = await read_request_body(
                client,
                request.headers,
                self.config.max_buffered_body,
                Timeouts.deadline(self.config.timeouts.idle),
            )
        except RequestBodyTooLarge as e:
            self._logger.warning("request_body_too_large", target=request.target, limit=e.limit)
            await client.write(simple_response(413, f"{e.message}\n"))
            return None
        except MalformedRequestError as e:
            self._logger.info("malformed_request", target=request.target, error=e.message)
            await client.write(simple_response(400, f"{e.message}\n"))
            return None
        return attrs.evolve(request, body=body)
