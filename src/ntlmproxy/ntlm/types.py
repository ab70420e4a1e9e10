"""
NTLM handshake types.

States, context and events of the per-request relay handshake:

    INITIAL -> NEGOTIATE_SENT -> CHALLENGED -> AUTHENTICATE_SENT -> RESOLVED
                     |                                  ^
                     +----------------------------------+  (no challenge)

RESOLVED carries an outcome (success or failure). The handshake is scoped
to one inbound request and never cached or shared.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Optional

import attrs
from attrs import field


# Negotiate leg plus at most one authenticate leg
MAX_UPSTREAM_ATTEMPTS = 2


class HandshakeState(Enum):
    """Relay handshake states."""

    INITIAL = auto()
    NEGOTIATE_SENT = auto()
    CHALLENGED = auto()
    AUTHENTICATE_SENT = auto()
    RESOLVED = auto()


class HandshakeOutcome(Enum):
    PENDING = auto()
    SUCCESS = auto()
    FAILURE = auto()


@attrs.define(frozen=True, slots=True)
class HandshakeContext:
    """
    Handshake state data.

    Attributes:
        method: Request method (CONNECT or the forwarded method)
        target: Request target (authority for CONNECT, URL otherwise)
        attempts: Upstream legs issued so far
        challenge_received: An NTLM challenge was accepted
        status: Last upstream status code
        reason: Last upstream reason phrase
        outcome: Terminal outcome once RESOLVED
        error: Failure description for connect/protocol errors
    """

    method: str = ""
    target: str = ""
    attempts: int = 0
    challenge_received: bool = False
    status: Optional[int] = None
    reason: str = ""
    outcome: HandshakeOutcome = HandshakeOutcome.PENDING
    error: str = ""


# =============================================================================
# EVENTS
# =============================================================================


@attrs.define(frozen=True, slots=True)
class NegotiateSent:
    """Event: first leg issued with the negotiate header."""

    method: str
    target: str


@attrs.define(frozen=True, slots=True)
class ChallengeReceived:
    """Event: upstream answered 407 with an NTLM challenge."""

    challenge: str = field(repr=False)


@attrs.define(frozen=True, slots=True)
class AuthenticateSent:
    """Event: second leg issued with the authenticate header."""


@attrs.define(frozen=True, slots=True)
class UpstreamResponded:
    """Event: a leg produced the response that will be delivered to the client."""

    status: int
    reason: str
    success: bool


@attrs.define(frozen=True, slots=True)
class UpstreamFailed:
    """Event: a leg failed (unreachable upstream, malformed challenge, client gone)."""

    error: str
