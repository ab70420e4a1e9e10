"""
ntlm-proxy State Machine Base

Abstract base class for the per-request protocol state machines with:
- A declarative transition table keyed by (state, event type)
- Invariant checking before a transition is committed
- Transition history, logged and exposed for tests

Transition handlers are pure: they receive the event and the current
context and return the next context. I/O happens in the callers.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Tuple, TypeVar

import attrs
import structlog
from returns.result import Failure, Result, Success

from ntlmproxy.core.exceptions import InvariantViolation

S = TypeVar("S", bound=Enum)  # State type
E = TypeVar("E")  # Event type
C = TypeVar("C")  # Context type

InvariantFn = Callable[[Any, Any], bool]
TransitionEntry = Tuple[Any, Callable[[Any, Any], Any]]


@attrs.define(frozen=True, slots=True)
class Transition(Generic[S]):
    """Immutable record of one committed transition."""

    from_state: S
    event_type: str
    to_state: S
    timestamp: datetime
    context_snapshot: Dict[str, Any] = attrs.Factory(dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.name,
            "event_type": self.event_type,
            "to_state": self.to_state.name,
            "timestamp": self.timestamp.isoformat(),
            "context_snapshot": self.context_snapshot,
        }


@attrs.define
class StateMachineBase(ABC, Generic[S, E, C]):
    """
    Base state machine driven by typed events.

    Usage:
        class LegMachine(StateMachineBase[LegState, Any, LegContext]):
            def initial_state(self) -> LegState:
                return LegState.IDLE

            def transition_table(self) -> Dict[Tuple[LegState, type], TransitionEntry]:
                return {
                    (LegState.IDLE, LegOpened): (LegState.OPEN, self._handle_open),
                }
    """

    _state: S = attrs.field(alias="_state")
    _context: C = attrs.field(alias="_context")
    _history: List[Transition[S]] = attrs.field(factory=list, alias="_history")
    _invariants: List[Tuple[str, InvariantFn]] = attrs.field(factory=list, alias="_invariants")
    _logger: Any = attrs.field(factory=lambda: structlog.get_logger(), alias="_logger")

    @abstractmethod
    def initial_state(self) -> S:
        """Return the initial state for this state machine."""
        ...

    @abstractmethod
    def transition_table(self) -> Dict[Tuple[S, type], TransitionEntry]:
        """Map (current_state, event_type) to (next_state, context_updater)."""
        ...

    @property
    def state(self) -> S:
        return self._state

    @property
    def context(self) -> C:
        return self._context

    def process_event(self, event: E) -> Result[S, str]:
        """
        Apply an event.

        Returns:
            Success(new_state) if the transition was committed
            Failure(error_message) if no transition exists for the event
            in the current state, or the context update failed

        Raises:
            InvariantViolation: If a registered invariant rejects the
            resulting state; nothing is committed in that case
        """
        event_name = type(event).__name__
        entry = self.transition_table().get((self._state, type(event)))
        if entry is None:
            self._logger.warning(
                "invalid_transition",
                current_state=self._state.name,
                event_type=event_name,
            )
            return Failure(f"No transition for state {self._state.name} with event {event_name}")

        next_state, context_updater = entry
        try:
            new_context = context_updater(event, self._context)
        except Exception as e:
            self._logger.error(
                "context_update_failed",
                error=str(e),
                current_state=self._state.name,
                event_type=event_name,
            )
            return Failure(f"Context update failed: {e}")

        for name, invariant in self._invariants:
            if not invariant(next_state, new_context):
                self._logger.error(
                    "invariant_violated",
                    invariant=name,
                    from_state=self._state.name,
                    to_state=next_state.name,
                )
                raise InvariantViolation(f"Invariant '{name}' violated")

        self._history.append(
            Transition(
                from_state=self._state,
                event_type=event_name,
                to_state=next_state,
                timestamp=datetime.now(timezone.utc),
                context_snapshot=self._snapshot_context(new_context),
            )
        )
        self._logger.debug(
            "state_transition",
            from_state=self._state.name,
            to_state=next_state.name,
            event_type=event_name,
        )

        self._state = next_state
        self._context = new_context
        return Success(next_state)

    def add_invariant(self, name: str, invariant: InvariantFn) -> None:
        """Register an invariant (state, context) -> bool checked on every transition."""
        self._invariants.append((name, invariant))

    def get_trace(self) -> List[Transition[S]]:
        """Return a copy of the transition history."""
        return list(self._history)

    @staticmethod
    def _snapshot_context(context: C) -> Dict[str, Any]:
        if not attrs.has(type(context)):
            return {}

        def serialize(inst: type, field: attrs.Attribute, value: Any) -> Any:  # noqa: ARG001
            if isinstance(value, bytes):
                return f"<bytes:{len(value)}>"
            if isinstance(value, Enum):
                return value.name
            return value

        return attrs.asdict(
            context,
            filter=lambda attr, value: not attr.name.startswith("_"),
            value_serializer=serialize,
        )
