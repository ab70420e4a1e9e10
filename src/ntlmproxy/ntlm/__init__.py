"""
ntlm-proxy NTLM Module

Everything the relay needs to answer an upstream NTLM challenge on the
client's behalf.

Components:
- codec: NTLMCodec interface and the ntlm-auth backed implementation
- auth_header: Proxy-Authorization values for the negotiate/authenticate legs
- types: Handshake states, context and events
- handshake: Per-request handshake state machine

No credentials or NTLM sessions are cached: every inbound request runs its
own handshake against the upstream proxy.
"""

from ntlmproxy.ntlm.codec import NTLMCodec, NtlmAuthCodec, check_challenge_envelope
from ntlmproxy.ntlm.auth_header import (
    NTLM_SCHEME,
    PROXY_AUTHENTICATE,
    PROXY_AUTHORIZATION,
    AuthHeaderBuilder,
    parse_challenge,
)
from ntlmproxy.ntlm.types import (
    MAX_UPSTREAM_ATTEMPTS,
    HandshakeContext,
    HandshakeOutcome,
    HandshakeState,
)
from ntlmproxy.ntlm.handshake import Handshake, HandshakeStateMachine

__all__ = [
    # Codec
    "NTLMCodec",
    "NtlmAuthCodec",
    "check_challenge_envelope",
    # Headers
    "AuthHeaderBuilder",
    "parse_challenge",
    "NTLM_SCHEME",
    "PROXY_AUTHENTICATE",
    "PROXY_AUTHORIZATION",
    # Handshake
    "Handshake",
    "HandshakeStateMachine",
    "HandshakeContext",
    "HandshakeOutcome",
    "HandshakeState",
    "MAX_UPSTREAM_ATTEMPTS",
]
