"""
ntlm-proxy Transport Module

Network layer between the client connection and the upstream proxy.

Components:
- stream: Client connection wrapper with push-back and disconnect watching
- http: HTTP/1.1 head parsing, body framing and serialization
- upstream: UpstreamRelay, one request per upstream connection
- splice: Full-duplex tunnel copy with half-close and linger
"""

from ntlmproxy.transport.stream import PeerStream
from ntlmproxy.transport.http import (
    CONNECTION_ESTABLISHED,
    ResponseHead,
    iter_response_body,
    read_request_body,
    read_request_head,
    read_response_head,
    response_has_body,
    serialize_request_head,
    serialize_response_head,
    simple_response,
    status_line_response,
)
from ntlmproxy.transport.upstream import UpstreamRelay
from ntlmproxy.transport.splice import SpliceResult, splice

__all__ = [
    # Streams
    "PeerStream",
    # HTTP framing
    "CONNECTION_ESTABLISHED",
    "ResponseHead",
    "iter_response_body",
    "read_request_body",
    "read_request_head",
    "read_response_head",
    "response_has_body",
    "serialize_request_head",
    "serialize_response_head",
    "simple_response",
    "status_line_response",
    # Upstream
    "UpstreamRelay",
    # Tunnel
    "SpliceResult",
    "splice",
]
