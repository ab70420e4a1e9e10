"""
NTLM message codec.

The relay never builds or parses NTLM messages itself. It talks to a codec
exposing two functions (negotiate and authenticate); the default codec is
backed by the ntlm-auth library.

Any object satisfying NTLMCodec can be injected, which is how tests drive
the relay with deterministic messages.
"""

from __future__ import annotations

from typing import Optional, Protocol

import structlog
from ntlm_auth.ntlm import NtlmContext

from ntlmproxy.core.exceptions import ProtocolError

logger = structlog.get_logger()

NTLM_SIGNATURE = b"NTLMSSP\x00"
CHALLENGE_MESSAGE_TYPE = 2

# NTLMv2 responses only, no LM/NTLMv1 fallback
NTLM_COMPATIBILITY = 3


class NTLMCodec(Protocol):
    """Stateless NTLM message builder."""

    def make_negotiate_message(self, domain: str, workstation: str) -> bytes:
        """Build the NEGOTIATE_MESSAGE (type 1)."""
        ...

    def make_authenticate_message(
        self,
        challenge: bytes,
        username: str,
        password: str,
        domain: str,
        workstation: str,
    ) -> bytes:
        """Parse a CHALLENGE_MESSAGE (type 2) and build the AUTHENTICATE_MESSAGE (type 3)."""
        ...


def check_challenge_envelope(challenge: bytes) -> None:
    """
    Verify the NTLMSSP signature and message type of a challenge.

    Raises:
        ProtocolError: If the bytes are not a CHALLENGE_MESSAGE
    """
    if len(challenge) < 32 or not challenge.startswith(NTLM_SIGNATURE):
        raise ProtocolError("Invalid NTLM challenge: missing NTLMSSP signature")
    message_type = int.from_bytes(challenge[8:12], "little")
    if message_type != CHALLENGE_MESSAGE_TYPE:
        raise ProtocolError(f"Invalid NTLM challenge: expected type 2, got {message_type}")


def _optional(value: str) -> Optional[str]:
    return value or None


class NtlmAuthCodec:
    """NTLMCodec backed by ntlm_auth.ntlm.NtlmContext."""

    def make_negotiate_message(self, domain: str, workstation: str) -> bytes:
        context = NtlmContext(
            "",
            "",
            _optional(domain),
            _optional(workstation),
            ntlm_compatibility=NTLM_COMPATIBILITY,
        )
        return context.step()

    def make_authenticate_message(
        self,
        challenge: bytes,
        username: str,
        password: str,
        domain: str,
        workstation: str,
    ) -> bytes:
        check_challenge_envelope(challenge)
        context = NtlmContext(
            username,
            password,
            _optional(domain),
            _optional(workstation),
            ntlm_compatibility=NTLM_COMPATIBILITY,
        )
        # The MIC covers the negotiate message; stepping once rebuilds the
        # same bytes that were sent on the first leg.
        context.step()
        try:
            return context.step(challenge)
        except Exception as e:
            logger.warning("ntlm_challenge_rejected", error=str(e))
            raise ProtocolError(f"Invalid NTLM challenge: {e}") from e
