"""
Per-request NTLM relay handshake.

HandshakeStateMachine encodes the legal transitions; Handshake is the
facade the forwarder and negotiator drive while they talk to the upstream
proxy. Illegal moves (a second challenge, a third attempt) surface as
StateError / InvariantViolation instead of silently retrying.
"""

from __future__ import annotations

from typing import Any, Dict, List, Tuple

import attrs
import structlog
from returns.result import Failure

from ntlmproxy.core.exceptions import StateError
from ntlmproxy.core.state_machine import StateMachineBase, Transition, TransitionEntry
from ntlmproxy.ntlm.types import (
    MAX_UPSTREAM_ATTEMPTS,
    AuthenticateSent,
    ChallengeReceived,
    HandshakeContext,
    HandshakeOutcome,
    HandshakeState,
    NegotiateSent,
    UpstreamFailed,
    UpstreamResponded,
)

logger = structlog.get_logger()


@attrs.define
class HandshakeStateMachine(StateMachineBase[HandshakeState, Any, HandshakeContext]):
    """
    State machine for one relayed request.

    States:
    - INITIAL: Nothing sent upstream yet
    - NEGOTIATE_SENT: First leg issued, waiting for the response head
    - CHALLENGED: 407 with an NTLM challenge received
    - AUTHENTICATE_SENT: Second leg issued, waiting for the response head
    - RESOLVED: Terminal; context.outcome says success or failure
    """

    def initial_state(self) -> HandshakeState:
        return HandshakeState.INITIAL

    def transition_table(self) -> Dict[Tuple[HandshakeState, type], TransitionEntry]:
        return {
            (HandshakeState.INITIAL, NegotiateSent): (
                HandshakeState.NEGOTIATE_SENT,
                self._handle_negotiate,
            ),
            (HandshakeState.NEGOTIATE_SENT, ChallengeReceived): (
                HandshakeState.CHALLENGED,
                self._handle_challenge,
            ),
            (HandshakeState.NEGOTIATE_SENT, UpstreamResponded): (
                HandshakeState.RESOLVED,
                self._handle_response,
            ),
            (HandshakeState.NEGOTIATE_SENT, UpstreamFailed): (
                HandshakeState.RESOLVED,
                self._handle_failure,
            ),
            (HandshakeState.CHALLENGED, AuthenticateSent): (
                HandshakeState.AUTHENTICATE_SENT,
                self._handle_authenticate,
            ),
            (HandshakeState.CHALLENGED, UpstreamFailed): (
                HandshakeState.RESOLVED,
                self._handle_failure,
            ),
            (HandshakeState.AUTHENTICATE_SENT, UpstreamResponded): (
                HandshakeState.RESOLVED,
                self._handle_response,
            ),
            (HandshakeState.AUTHENTICATE_SENT, UpstreamFailed): (
                HandshakeState.RESOLVED,
                self._handle_failure,
            ),
        }

    @staticmethod
    def _handle_negotiate(event: NegotiateSent, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(
            ctx, method=event.method, target=event.target, attempts=ctx.attempts + 1
        )

    @staticmethod
    def _handle_challenge(event: ChallengeReceived, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(ctx, challenge_received=True, status=407)

    @staticmethod
    def _handle_authenticate(event: AuthenticateSent, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(ctx, attempts=ctx.attempts + 1)

    @staticmethod
    def _handle_response(event: UpstreamResponded, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(
            ctx,
            status=event.status,
            reason=event.reason,
            outcome=HandshakeOutcome.SUCCESS if event.success else HandshakeOutcome.FAILURE,
        )

    @staticmethod
    def _handle_failure(event: UpstreamFailed, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(ctx, error=event.error, outcome=HandshakeOutcome.FAILURE)


def _bounded_attempts(state: HandshakeState, ctx: HandshakeContext) -> bool:
    return ctx.attempts <= MAX_UPSTREAM_ATTEMPTS


def _challenge_before_authenticate(state: HandshakeState, ctx: HandshakeContext) -> bool:
    if state == HandshakeState.AUTHENTICATE_SENT:
        return ctx.challenge_received
    return True


def _resolved_has_outcome(state: HandshakeState, ctx: HandshakeContext) -> bool:
    return (state == HandshakeState.RESOLVED) == (ctx.outcome != HandshakeOutcome.PENDING)


@attrs.define
class Handshake:
    """
    Facade over HandshakeStateMachine for one inbound request.

    Example:
        handshake = Handshake()
        handshake.negotiate_sent("CONNECT", "example.com:443")
        handshake.challenged(challenge_value)
        handshake.authenticate_sent()
        handshake.responded(200, "Connection established", success=True)
        assert handshake.succeeded
    """

    _machine: HandshakeStateMachine = attrs.Factory(
        lambda: HandshakeStateMachine(
            _state=HandshakeState.INITIAL,
            _context=HandshakeContext(),
        )
    )

    def __attrs_post_init__(self) -> None:
        self._machine.add_invariant("bounded_attempts", _bounded_attempts)
        self._machine.add_invariant("challenge_before_authenticate", _challenge_before_authenticate)
        self._machine.add_invariant("resolved_has_outcome", _resolved_has_outcome)

    @property
    def state(self) -> HandshakeState:
        return self._machine.state

    @property
    def context(self) -> HandshakeContext:
        return self._machine.context

    @property
    def attempts(self) -> int:
        return self.context.attempts

    @property
    def resolved(self) -> bool:
        return self.state == HandshakeState.RESOLVED

    @property
    def succeeded(self) -> bool:
        return self.context.outcome == HandshakeOutcome.SUCCESS

    def negotiate_sent(self, method: str, target: str) -> None:
        self._advance(NegotiateSent(method=method, target=target))

    def challenged(self, challenge: str) -> None:
        self._advance(ChallengeReceived(challenge=challenge))

    def authenticate_sent(self) -> None:
        self._advance(AuthenticateSent())

    def responded(self, status: int, reason: str, success: bool) -> None:
        self._advance(UpstreamResponded(status=status, reason=reason, success=success))

    def failed(self, error: str) -> None:
        """Resolve as failure; a no-op once already resolved."""
        if not self.resolved:
            self._advance(UpstreamFailed(error=error))

    def get_trace(self) -> List[Transition[HandshakeState]]:
        return self._machine.get_trace()

    def _advance(self, event: Any) -> None:
        result = self._machine.process_event(event)
        if isinstance(result, Failure):
            raise StateError(result.failure())
        if self.resolved:
            ctx = self.context
            logger.info(
                "handshake_resolved",
                method=ctx.method,
                target=ctx.target,
                attempts=ctx.attempts,
                status=ctx.status,
                outcome=ctx.outcome.name,
                error=ctx.error or None,
            )
