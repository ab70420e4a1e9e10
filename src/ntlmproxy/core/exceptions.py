"""
ntlm-proxy Exception Types

Custom exceptions for configuration, upstream relay and NTLM handshake errors.

Every per-request exception is contained by the connection handler that
raised it; only ConfigValidationError is fatal to the process.
"""

from typing import Optional


class NTLMProxyError(Exception):
    """Base exception for all ntlm-proxy errors."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigValidationError(NTLMProxyError):
    """
    Startup configuration is invalid.

    Raised before any socket is opened; the CLI exits with status 1.
    """

    pass


class UpstreamConnectError(NTLMProxyError):
    """
    The upstream proxy could not be reached.

    Covers refused connections, resets before a response head was read,
    and connect/response deadlines expiring. Fatal to the current request
    only.
    """

    def __init__(self, host: str, port: int, reason: str) -> None:
        super().__init__(f"Upstream proxy {host}:{port} unavailable: {reason}")
        self.host = host
        self.port = port
        self.reason = reason


class ProtocolError(NTLMProxyError):
    """
    Protocol-level error.

    Malformed NTLM challenge header or malformed HTTP framing from the
    upstream proxy.
    """

    pass


class MalformedRequestError(ProtocolError):
    """The client sent a request head that cannot be parsed."""

    pass


class UpstreamAuthFailure(NTLMProxyError):
    """
    Upstream rejected the authenticate leg.

    The response is relayed to the client verbatim and never retried.
    """

    def __init__(self, status: int, reason: str = "") -> None:
        super().__init__(f"Upstream authentication failed: {status} {reason}".rstrip(), code=status)
        self.status = status
        self.reason = reason


class RequestBodyTooLarge(NTLMProxyError):
    """The request body exceeds the replay buffer limit."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Request body exceeds {limit} bytes", code=413)
        self.limit = limit


class StateError(NTLMProxyError):
    """
    Invalid state transition.

    This indicates an attempt to drive the handshake in a way that is
    not valid in its current state, such as a second challenge.
    """

    pass


class InvariantViolation(NTLMProxyError):
    """
    Handshake invariant was violated.

    Raised when a transition would break a rule the handshake must always
    hold, for example a third upstream attempt.
    """

    pass
