"""Generic finite state machine.

This module implements the StateMachine class used by every lifecycle in
the service: pipeline requests and sessions each instantiate it with
their own transition table.

The machine is deliberately small:
- transition() enforces the table and raises TransitionError
- try_transition() logs a warning and returns False instead of raising
- can_transition() is a pure predicate

A state whose table entry is empty is terminal. States missing from the
table entirely are treated the same way.

Source:
- src/agentflow/state/models.py (PIPELINE_TRANSITIONS, SESSION_TRANSITIONS)
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, Generic, Iterable, Mapping, TypeVar


logger = logging.getLogger(__name__)

S = TypeVar("S", bound=Enum)


class TransitionError(Exception):
    """Raised when a transition is not allowed by the table.

    Attributes:
        from_state: The current state.
        to_state: The attempted target state.
        label: Diagnostic name of the machine (e.g. "pipeline:abc").
    """

    def __init__(self, from_state: Enum, to_state: Enum, label: str):
        self.from_state = from_state
        self.to_state = to_state
        self.label = label
        super().__init__(
            f"[{label}] Invalid transition from {from_state.value} to {to_state.value}"
        )


class StateMachine(Generic[S]):
    """Table-driven state machine over an Enum of states.

    The table maps each state to the set of states reachable from it.
    The machine holds only the current state; persistence and event
    publication are the owner's concern.

    Attributes:
        label: Diagnostic name used in errors and log records.

    Example:
        >>> machine = StateMachine(PipelineStatus.ACCEPTED, PIPELINE_TRANSITIONS, "pipeline:r1")
        >>> machine.transition(PipelineStatus.RUNNING)
        >>> machine.try_transition(PipelineStatus.ACCEPTED)
        False
    """

    def __init__(
        self,
        initial: S,
        transitions: Mapping[S, Iterable[S]],
        label: str,
    ):
        self._state: S = initial
        self._table: Dict[S, FrozenSet[S]] = {
            state: frozenset(targets) for state, targets in transitions.items()
        }
        self.label = label

    @property
    def state(self) -> S:
        return self._state

    def can_transition(self, to_state: S) -> bool:
        """Return True if moving from the current state to to_state is allowed."""
        return to_state in self._table.get(self._state, frozenset())

    def transition(self, to_state: S) -> None:
        """Move to to_state.

        Args:
            to_state: The target state.

        Raises:
            TransitionError: If the table does not allow the move.
        """
        if not self.can_transition(to_state):
            raise TransitionError(self._state, to_state, self.label)
        self._state = to_state

    def try_transition(self, to_state: S) -> bool:
        """Move to to_state if allowed.

        Returns:
            True if the state changed, False if the move was rejected.
        """
        if not self.can_transition(to_state):
            logger.warning(
                "Invalid state transition attempted",
                extra={
                    "machine": self.label,
                    "from_state": self._state.value,
                    "to_state": to_state.value,
                },
            )
            return False
        self._state = to_state
        return True

    def is_terminal(self) -> bool:
        """Return True if no transition leaves the current state."""
        return not self._table.get(self._state)

    def allowed_transitions(self) -> FrozenSet[S]:
        return self._table.get(self._state, frozenset())
