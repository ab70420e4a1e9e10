"""
ntlm-proxy - Forward proxy for NTLM-authenticating upstream proxies

Clients (browsers, CLI tools) talk plain HTTP or CONNECT to this proxy
without credentials; every request is relayed to the upstream proxy and,
when it answers 407 with an NTLM challenge, the three-message NTLM
handshake is completed on the client's behalf.

Example Usage:
    from ntlmproxy import ProxyListener, load_config

    config = load_config({
        "target": "proxy.corp.example:3128",
        "username": "alice",
        "password": "secret",
        "domain": "CORP",
    })
    listener = ProxyListener(config)
    await listener.start()

Or from the shell:
    ntlm-proxy -t proxy.corp.example:3128 -u alice --password secret -d CORP
"""

__version__ = "0.1.0"

from ntlmproxy.core.config import load_config
from ntlmproxy.core.types import ProxyConfig, Timeouts
from ntlmproxy.core.exceptions import ConfigValidationError, NTLMProxyError
from ntlmproxy.proxy.listener import ProxyListener

__all__ = [
    # Main API
    "ProxyListener",
    "load_config",
    # Types
    "ProxyConfig",
    "Timeouts",
    # Errors
    "NTLMProxyError",
    "ConfigValidationError",
    # Metadata
    "__version__",
]
