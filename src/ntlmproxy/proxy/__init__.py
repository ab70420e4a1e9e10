"""
ntlm-proxy Proxy Module

Request handling on top of the transport layer.

Components:
- forwarder: HttpRequestForwarder for plain HTTP requests
- negotiator: ConnectTunnelNegotiator for CONNECT tunnels
- listener: ProxyListener accepting and routing client connections
- shutdown: ShutdownCoordinator for signal-driven graceful stop
"""

from ntlmproxy.proxy.forwarder import HttpRequestForwarder, build_upstream_headers
from ntlmproxy.proxy.negotiator import ConnectTunnelNegotiator
from ntlmproxy.proxy.listener import ProxyListener
from ntlmproxy.proxy.shutdown import ShutdownCoordinator, run_until_shutdown

__all__ = [
    # Request handlers
    "HttpRequestForwarder",
    "ConnectTunnelNegotiator",
    "build_upstream_headers",
    # Server
    "ProxyListener",
    "ShutdownCoordinator",
    "run_until_shutdown",
]
