"""
ntlm-proxy Core Types

Value types shared by the relay: configuration, header mappings, and the
per-request inbound/upstream exchange records.

Design Principles:
- Immutable: configuration and response heads use frozen attrs
- Validated: constraints enforced at construction, raising
  ConfigValidationError for configuration
- Scoped: InboundRequest and UpstreamExchange never outlive one request
"""

from __future__ import annotations

import asyncio
from enum import Enum, auto
from typing import AsyncIterator, Iterable, Iterator, List, Optional, Tuple

import attrs
from attrs import field

from ntlmproxy.core.exceptions import ConfigValidationError


# =============================================================================
# VALIDATORS
# =============================================================================


def _non_empty(message: str):
    def check(instance: object, attribute: attrs.Attribute, value: str) -> None:
        if not value:
            raise ConfigValidationError(message)

    return check


def _port(allow_zero: bool):
    low = 0 if allow_zero else 1

    def check(instance: object, attribute: attrs.Attribute, value: int) -> None:
        if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= 65535:
            raise ConfigValidationError(
                f"{attribute.name} must be an integer between {low} and 65535, got {value!r}"
            )

    return check


def _non_negative(instance: object, attribute: attrs.Attribute, value: float) -> None:
    if value < 0:
        raise ConfigValidationError(f"{attribute.name} must not be negative, got {value!r}")


# =============================================================================
# CONFIGURATION
# =============================================================================


@attrs.define(frozen=True, slots=True)
class Timeouts:
    """
    Deadlines in seconds. Zero disables the corresponding deadline.

    Attributes:
        connect: Opening a TCP connection to the upstream proxy
        response: Waiting for the upstream status line and headers
        idle: Inactivity on a tunnel direction or a relayed body
        client_header: Reading the client's request head
        linger: How long the surviving tunnel direction may run after
            the other one reached EOF
        shutdown_grace: How long shutdown waits for in-flight handlers;
            zero cancels them at once instead of disabling the wait
    """

    connect: float = field(default=10.0, validator=_non_negative)
    response: float = field(default=30.0, validator=_non_negative)
    idle: float = field(default=300.0, validator=_non_negative)
    client_header: float = field(default=30.0, validator=_non_negative)
    linger: float = field(default=5.0, validator=_non_negative)
    shutdown_grace: float = field(default=5.0, validator=_non_negative)

    @staticmethod
    def deadline(value: float) -> Optional[float]:
        """Translate a configured value into an asyncio timeout argument."""
        return value if value > 0 else None


@attrs.define(frozen=True, slots=True)
class ProxyConfig:
    """
    Immutable proxy configuration, built once at startup and shared by
    reference with every request handler.

    INVARIANT: upstream host/port and credentials are non-empty
    INVARIANT: TLS enabled implies both certificate and key paths
    """

    upstream_host: str = field(
        validator=_non_empty(
            "Target proxy server is required. Use --target option or set TARGET_PROXY in .env"
        )
    )
    upstream_port: int = field(validator=_port(allow_zero=False))
    username: str = field(
        validator=_non_empty(
            "NTLM credentials are required. Use --username/--password options "
            "or set NTLM_USERNAME/NTLM_PASSWORD in .env"
        )
    )
    password: str = field(
        repr=False,
        validator=_non_empty(
            "NTLM credentials are required. Use --username/--password options "
            "or set NTLM_USERNAME/NTLM_PASSWORD in .env"
        ),
    )
    domain: str = ""
    workstation: str = "localhost"
    listen_host: str = "localhost"
    listen_port: int = field(default=8080, validator=_port(allow_zero=True))
    tls_enabled: bool = False
    tls_cert_path: Optional[str] = None
    tls_key_path: Optional[str] = None
    verbose: bool = False
    timeouts: Timeouts = field(factory=Timeouts)
    max_buffered_body: int = field(default=8 * 1024 * 1024, validator=_non_negative)

    def __attrs_post_init__(self) -> None:
        if self.tls_enabled and (not self.tls_cert_path or not self.tls_key_path):
            raise ConfigValidationError(
                "TLS certificate and key files are required when TLS is enabled"
            )

    @property
    def target(self) -> str:
        """Upstream proxy as host:port."""
        return f"{self.upstream_host}:{self.upstream_port}"

    @property
    def account(self) -> str:
        """DOMAIN\\user form used in logs and the startup banner."""
        return f"{self.domain}\\{self.username}"


# =============================================================================
# HEADERS
# =============================================================================


class Headers:
    """
    Ordered, case-insensitive multi-map of HTTP header fields.

    Duplicate names are kept in wire order and original name casing is
    preserved for serialization.
    """

    __slots__ = ("_fields",)

    def __init__(self, fields: Iterable[Tuple[str, str]] = ()) -> None:
        self._fields: List[Tuple[str, str]] = [(name, value) for name, value in fields]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """First value for name, or default."""
        lowered = name.lower()
        for key, value in self._fields:
            if key.lower() == lowered:
                return value
        return default

    def get_all(self, name: str) -> List[str]:
        lowered = name.lower()
        return [value for key, value in self._fields if key.lower() == lowered]

    def add(self, name: str, value: str) -> None:
        self._fields.append((name, value))

    def remove(self, name: str) -> None:
        lowered = name.lower()
        self._fields = [(key, value) for key, value in self._fields if key.lower() != lowered]

    def replace(self, name: str, value: str) -> None:
        """Drop every field called name and append a single new one."""
        self.remove(name)
        self.add(name, value)

    def items(self) -> List[Tuple[str, str]]:
        return list(self._fields)

    def copy(self) -> Headers:
        return Headers(self._fields)

    def has_token(self, name: str, token: str) -> bool:
        """True if any comma-separated value of name equals token (case-insensitive)."""
        token = token.lower()
        for value in self.get_all(name):
            if any(part.strip().lower() == token for part in value.split(",")):
                return True
        return False

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._fields))

    def __len__(self) -> int:
        return len(self._fields)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Headers):
            return NotImplemented
        return self._fields == other._fields

    def __repr__(self) -> str:
        return f"Headers({self._fields!r})"


def merge_headers(client_headers: Headers, overrides: Headers) -> Headers:
    """
    Merge client headers with proxy-supplied overrides.

    Every client field is kept in order unless an override carries the
    same name (case-insensitive); overrides are appended afterwards, so
    the proxy's authorization header always wins over a client value.
    """
    overridden = {name.lower() for name, _ in overrides}
    merged = Headers(
        (name, value) for name, value in client_headers if name.lower() not in overridden
    )
    for name, value in overrides:
        merged.add(name, value)
    return merged


# =============================================================================
# REQUEST / EXCHANGE RECORDS
# =============================================================================


class RequestKind(Enum):
    """How the listener routes an inbound request."""

    FORWARD = auto()
    CONNECT = auto()


@attrs.define(frozen=True, slots=True)
class InboundRequest:
    """
    One client-initiated exchange.

    For non-CONNECT requests the body is fully buffered so it can be
    replayed on the authenticate leg.
    """

    method: str
    target: str
    version: str = "HTTP/1.1"
    headers: Headers = field(factory=Headers, eq=False)
    body: bytes = field(default=b"", repr=False)

    @property
    def kind(self) -> RequestKind:
        return RequestKind.CONNECT if self.method.upper() == "CONNECT" else RequestKind.FORWARD

    @property
    def wants_close(self) -> bool:
        """True if the client will not reuse the connection after this request."""
        if self.headers.has_token("Connection", "close"):
            return True
        if self.version == "HTTP/1.0":
            return not self.headers.has_token("Connection", "keep-alive")
        return False


@attrs.define(slots=True)
class UpstreamExchange:
    """
    One attempt against the upstream proxy.

    For a successful CONNECT, reader/writer are the raw tunnel streams;
    bytes the upstream sent after the response head are still buffered in
    reader. For other requests, body iterates the raw response body bytes
    in wire framing.
    """

    status: int
    reason: str
    headers: Headers = field(factory=Headers)
    version: str = "HTTP/1.1"
    reader: Optional[asyncio.StreamReader] = field(default=None, repr=False)
    writer: Optional[asyncio.StreamWriter] = field(default=None, repr=False)
    body: Optional[AsyncIterator[bytes]] = field(default=None, repr=False)
    will_close: bool = False

    @property
    def is_tunnel(self) -> bool:
        return self.writer is not None and self.status == 200 and self.body is None

    @property
    def has_ntlm_challenge(self) -> bool:
        """True for a 407 whose Proxy-Authenticate offers the NTLM scheme."""
        if self.status != 407:
            return False
        return any("NTLM" in value for value in self.headers.get_all("Proxy-Authenticate"))

    def ntlm_challenge(self) -> Optional[str]:
        """The Proxy-Authenticate value carrying the NTLM scheme, if any."""
        for value in self.headers.get_all("Proxy-Authenticate"):
            if "NTLM" in value:
                return value
        return None

    async def close(self) -> None:
        """Release the upstream connection."""
        if self.writer is None:
            return
        writer, self.writer = self.writer, None
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass
