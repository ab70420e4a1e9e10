"""
Proxy-Authorization header builder.

Wraps an NTLMCodec to produce the header values for the two client legs
of the NTLM handshake:

    negotiate:     Proxy-Authorization: NTLM <base64 type 1>
    authenticate:  Proxy-Authorization: NTLM <base64 type 3>

Both operations are pure functions of the configuration and, for the
authenticate leg, the upstream challenge.
"""

from __future__ import annotations

import base64
import binascii
import re

import attrs
import structlog

from ntlmproxy.core.exceptions import ProtocolError
from ntlmproxy.core.types import ProxyConfig
from ntlmproxy.ntlm.codec import NTLMCodec, NtlmAuthCodec

logger = structlog.get_logger()

PROXY_AUTHORIZATION = "Proxy-Authorization"
PROXY_AUTHENTICATE = "Proxy-Authenticate"
NTLM_SCHEME = "NTLM"

_CHALLENGE_RE = re.compile(r"(?:^|[\s,])NTLM\s+(\S+)")


def parse_challenge(header_value: str) -> bytes:
    """
    Extract the CHALLENGE_MESSAGE bytes from a Proxy-Authenticate value.

    Raises:
        ProtocolError: If the NTLM scheme or its base64 payload is missing
        or not valid base64
    """
    match = _CHALLENGE_RE.search(header_value or "")
    if match is None:
        raise ProtocolError("Invalid NTLM challenge response")
    payload = match.group(1).rstrip(",")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ProtocolError(f"Invalid NTLM challenge encoding: {e}") from e


def encode_header(message: bytes) -> str:
    return f"{NTLM_SCHEME} {base64.b64encode(message).decode('ascii')}"


@attrs.define(frozen=True)
class AuthHeaderBuilder:
    """
    Builds Proxy-Authorization values for the negotiate and authenticate legs.

    Example:
        builder = AuthHeaderBuilder()
        first = builder.build_negotiate_header(config)
        # ... upstream answers 407 with Proxy-Authenticate: NTLM <challenge>
        second = builder.build_authenticate_header(config, challenge_value)
    """

    codec: NTLMCodec = attrs.field(factory=NtlmAuthCodec)

    def build_negotiate_header(self, config: ProxyConfig) -> str:
        """Header value for the first leg."""
        message = self.codec.make_negotiate_message(config.domain, config.workstation)
        return encode_header(message)

    def build_authenticate_header(self, config: ProxyConfig, challenge_value: str) -> str:
        """
        Header value for the second leg, derived from the upstream challenge.

        Raises:
            ProtocolError: If the challenge is malformed
        """
        challenge = parse_challenge(challenge_value)
        message = self.codec.make_authenticate_message(
            challenge,
            config.username,
            config.password,
            config.domain,
            config.workstation,
        )
        logger.debug(
            "authenticate_header_built",
            account=config.account,
            challenge_length=len(challenge),
        )
        return encode_header(message)
