"""
Pytest configuration and shared fixtures for ntlm-proxy tests.
"""

import asyncio
import base64
import hashlib
import socket
import struct
from typing import List, Optional, Tuple

import attrs
import pytest
import pytest_asyncio

from ntlmproxy.core.types import ProxyConfig, Timeouts
from ntlmproxy.ntlm.auth_header import AuthHeaderBuilder
from ntlmproxy.ntlm.codec import NTLM_SIGNATURE, check_challenge_envelope
from ntlmproxy.proxy.listener import ProxyListener


# =============================================================================
# NTLM FIXTURES
# =============================================================================

SERVER_CHALLENGE = bytes.fromhex("0123456789abcdef")

# UNICODE | REQUEST_TARGET | NTLM | ALWAYS_SIGN | EXTENDED_SESSIONSECURITY | TARGET_INFO
CHALLENGE_FLAGS = 0x00888205


def _av_pair(av_id: int, value: bytes) -> bytes:
    return av_id.to_bytes(2, "little") + len(value).to_bytes(2, "little") + value


def make_challenge(server_challenge: bytes = SERVER_CHALLENGE, domain: str = "CORP") -> bytes:
    """Build a minimal CHALLENGE_MESSAGE with target info."""
    target_info = (
        _av_pair(2, domain.encode("utf-16-le"))
        + _av_pair(1, b"S\x00E\x00R\x00V\x00E\x00R\x00")
        + _av_pair(0, b"")
    )
    header_size = 48
    return (
        NTLM_SIGNATURE
        + (2).to_bytes(4, "little")
        # Target name: empty, offset at end of header
        + (0).to_bytes(2, "little")
        + (0).to_bytes(2, "little")
        + header_size.to_bytes(4, "little")
        + CHALLENGE_FLAGS.to_bytes(4, "little")
        + server_challenge
        + b"\x00" * 8
        + len(target_info).to_bytes(2, "little")
        + len(target_info).to_bytes(2, "little")
        + header_size.to_bytes(4, "little")
        + target_info
    )


def challenge_header(challenge: Optional[bytes] = None) -> str:
    """Proxy-Authenticate value carrying a challenge."""
    challenge = make_challenge() if challenge is None else challenge
    return "NTLM " + base64.b64encode(challenge).decode("ascii")


class FakeCodec:
    """
    Deterministic NTLMCodec.

    The authenticate message is a digest of every input, so identical
    inputs always give identical headers and any change is visible.
    """

    NEGOTIATE_PREFIX = NTLM_SIGNATURE + (1).to_bytes(4, "little")
    AUTHENTICATE_PREFIX = NTLM_SIGNATURE + (3).to_bytes(4, "little")

    def __init__(self) -> None:
        self.authenticate_calls: List[Tuple[bytes, str, str, str, str]] = []

    def make_negotiate_message(self, domain: str, workstation: str) -> bytes:
        return self.NEGOTIATE_PREFIX + f"{domain}|{workstation}".encode("utf-8")

    def make_authenticate_message(
        self, challenge: bytes, username: str, password: str, domain: str, workstation: str
    ) -> bytes:
        check_challenge_envelope(challenge)
        self.authenticate_calls.append((challenge, username, password, domain, workstation))
        digest = hashlib.sha256(
            b"\x00".join(
                [challenge]
                + [value.encode("utf-8") for value in (username, password, domain, workstation)]
            )
        ).digest()
        return self.AUTHENTICATE_PREFIX + digest


def fake_authenticate_header(config: ProxyConfig, challenge: Optional[bytes] = None) -> str:
    """The authenticate header FakeCodec yields for config and challenge."""
    builder = AuthHeaderBuilder(codec=FakeCodec())
    return builder.build_authenticate_header(config, challenge_header(challenge))


def _md4_available() -> bool:
    try:
        hashlib.new("md4", b"")
    except ValueError:
        return False
    return True


requires_md4 = pytest.mark.skipif(
    not _md4_available(), reason="MD4 not available in hashlib (needed by ntlm-auth)"
)


@pytest.fixture
def fake_codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def builder(fake_codec: FakeCodec) -> AuthHeaderBuilder:
    return AuthHeaderBuilder(codec=fake_codec)


# =============================================================================
# CONFIGURATION FIXTURES
# =============================================================================

FAST_TIMEOUTS = Timeouts(
    connect=2.0,
    response=2.0,
    idle=5.0,
    client_header=2.0,
    linger=0.5,
    shutdown_grace=1.0,
)


def make_config(upstream_port: int = 3128, **overrides) -> ProxyConfig:
    values = dict(
        upstream_host="127.0.0.1",
        upstream_port=upstream_port,
        username="alice",
        password="s3cret!",
        domain="CORP",
        workstation="WS01",
        listen_host="127.0.0.1",
        listen_port=0,
        timeouts=FAST_TIMEOUTS,
    )
    values.update(overrides)
    return ProxyConfig(**values)


@pytest.fixture
def config() -> ProxyConfig:
    """Config pointing at a placeholder upstream; no sockets involved."""
    return make_config()


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


# =============================================================================
# FAKE UPSTREAM PROXY
# =============================================================================


@attrs.define
class UpstreamReply:
    """
    Scripted upstream behaviour for one connection.

    tunnel: after the head, echo every byte back until EOF
    silent: read the request, never answer, wait for the caller to hang up
    hangup: read the request and close without answering
    raw: send these bytes instead of a well-formed response
    """

    status: int = 200
    reason: str = "OK"
    headers: List[Tuple[str, str]] = attrs.Factory(list)
    body: bytes = b""
    tunnel: bool = False
    silent: bool = False
    hangup: bool = False
    after_head: bytes = b""
    raw: Optional[bytes] = None

    def serialize(self) -> bytes:
        if self.raw is not None:
            return self.raw
        lines = [f"HTTP/1.1 {self.status} {self.reason}"]
        lines += [f"{name}: {value}" for name, value in self.headers]
        if not self.tunnel:
            lines.append(f"Content-Length: {len(self.body)}")
        head = ("\r\n".join(lines) + "\r\n\r\n").encode("latin-1")
        return head + (self.after_head if self.tunnel else self.body)


def challenge_reply(challenge: Optional[bytes] = None) -> UpstreamReply:
    return UpstreamReply(
        status=407,
        reason="Proxy Authentication Required",
        headers=[("Proxy-Authenticate", challenge_header(challenge))],
        body=b"auth required",
    )


@attrs.define
class RecordedRequest:
    method: str
    target: str
    headers: List[Tuple[str, str]]
    body: bytes

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None

    def header_count(self, name: str) -> int:
        return sum(1 for key, _ in self.headers if key.lower() == name.lower())


class FakeUpstreamProxy:
    """
    In-process upstream proxy on 127.0.0.1.

    Replies are consumed one per connection; the last one repeats.
    """

    def __init__(self) -> None:
        self.replies: List[UpstreamReply] = []
        self.requests: List[RecordedRequest] = []
        self.connections = 0
        self.tunnel_received = bytearray()
        self.tunnel_closed = asyncio.Event()
        self.abandoned = asyncio.Event()
        self.port = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: set = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def close(self) -> None:
        self._server.close()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._server.wait_closed()

    def _next_reply(self) -> Optional[UpstreamReply]:
        if not self.replies:
            return None
        if len(self.replies) == 1:
            return self.replies[0]
        return self.replies.pop(0)

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._tasks.add(task)
        self.connections += 1
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            lines = head.decode("latin-1").split("\r\n")
            method, target, _ = lines[0].split(" ", 2)
            headers = []
            for line in lines[1:]:
                if line:
                    name, _, value = line.partition(":")
                    headers.append((name, value.strip()))
            request = RecordedRequest(method, target, headers, b"")
            length = int(request.header("Content-Length") or 0)
            if length:
                request.body = await reader.readexactly(length)
            self.requests.append(request)

            reply = self._next_reply()
            if reply is None or reply.hangup:
                return
            if reply.silent:
                while await reader.read(65536):
                    pass
                self.abandoned.set()
                return
            writer.write(reply.serialize())
            await writer.drain()
            if reply.tunnel:
                while True:
                    data = await reader.read(65536)
                    if not data:
                        break
                    self.tunnel_received += data
                    writer.write(data)
                    await writer.drain()
                self.tunnel_closed.set()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self._tasks.discard(task)
            writer.close()


@pytest_asyncio.fixture
async def upstream():
    proxy = FakeUpstreamProxy()
    await proxy.start()
    yield proxy
    await proxy.close()


@pytest.fixture
def proxy_config(upstream: FakeUpstreamProxy) -> ProxyConfig:
    return make_config(upstream_port=upstream.port)


@pytest_asyncio.fixture
async def listener(proxy_config: ProxyConfig, builder: AuthHeaderBuilder):
    server = ProxyListener(proxy_config, builder=builder)
    await server.start()
    yield server
    server.stop_accepting()
    await server.drain(1.0)
    await server.close()


# =============================================================================
# CLIENT HELPERS
# =============================================================================


@attrs.define
class ClientResponse:
    status: int
    reason: str
    headers: List[Tuple[str, str]]
    body: bytes

    def header(self, name: str) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == name.lower():
                return value
        return None


async def open_client(server: ProxyListener):
    return await asyncio.open_connection("127.0.0.1", server.port)


def abort_connection(writer: asyncio.StreamWriter) -> None:
    """Close with a TCP reset instead of a FIN."""
    sock = writer.get_extra_info("socket")
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    writer.close()


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


async def read_response(reader: asyncio.StreamReader, timeout: float = 5.0) -> ClientResponse:
    """Read one response; the body is framed by Content-Length only."""
    head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout=timeout)
    lines = head.decode("latin-1").split("\r\n")
    _, status, reason = (lines[0].split(" ", 2) + [""])[:3]
    headers = []
    for line in lines[1:]:
        if line:
            name, _, value = line.partition(":")
            headers.append((name, value.strip()))
    response = ClientResponse(int(status), reason, headers, b"")
    length = int(response.header("Content-Length") or 0)
    if length:
        response.body = await asyncio.wait_for(reader.readexactly(length), timeout=timeout)
    return response


# =============================================================================
# PYTEST MARKERS
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "network: tests that open sockets on 127.0.0.1"
    )
    config.addinivalue_line(
        "markers", "codec: tests that exercise the real ntlm-auth codec"
    )
