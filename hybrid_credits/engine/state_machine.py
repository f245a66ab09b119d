"""Per-identity reconciliation state machine.

Each identity the engine touches moves through explicit states with
validated transitions:

    uninitialized -> loading -> ready -> migrating -> ready
                                ready -> loading       (reload)

Usage:
    machine = ReconciliationStateMachine("anonymous:D1")
    machine.transition_to(ReconciliationState.LOADING)  # OK
    machine.transition_to(ReconciliationState.MIGRATING)  # Fails - not adjacent
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class ReconciliationState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    MIGRATING = "migrating"


@dataclass(frozen=True)
class StateTransition:
    """A valid state transition."""

    from_state: ReconciliationState
    to_state: ReconciliationState


DEFAULT_TRANSITIONS: tuple[StateTransition, ...] = (
    StateTransition(ReconciliationState.UNINITIALIZED, ReconciliationState.LOADING),
    StateTransition(ReconciliationState.LOADING, ReconciliationState.READY),
    StateTransition(ReconciliationState.READY, ReconciliationState.LOADING),
    StateTransition(ReconciliationState.READY, ReconciliationState.MIGRATING),
    StateTransition(ReconciliationState.MIGRATING, ReconciliationState.READY),
)


@dataclass
class ReconciliationStateMachine:
    """Tracks the reconciliation state of one identity.

    Attributes:
        identity_key: Identity the machine belongs to
        current_state: Current state
        history: Past states (most recent last)
        transitions: Allowed transitions
    """

    identity_key: str
    current_state: ReconciliationState = ReconciliationState.UNINITIALIZED
    history: list[ReconciliationState] = field(default_factory=list)
    transitions: tuple[StateTransition, ...] = DEFAULT_TRANSITIONS

    def can_transition_to(self, target_state: ReconciliationState) -> bool:
        """Check if transition to target state is valid."""
        return StateTransition(self.current_state, target_state) in self.transitions

    def transition_to(self, target_state: ReconciliationState) -> bool:
        """Attempt to transition to target state.

        Returns:
            True if transition succeeded
        """
        if not self.can_transition_to(target_state):
            logger.warning(
                "Invalid transition for %s from '%s' to '%s'",
                self.identity_key,
                self.current_state.value,
                target_state.value,
            )
            return False

        self.history.append(self.current_state)
        old_state = self.current_state
        self.current_state = target_state

        logger.debug(
            "State transition for %s: %s -> %s",
            self.identity_key,
            old_state.value,
            target_state.value,
        )
        return True

    def in_state(self, *states: ReconciliationState) -> bool:
        """Check if current state is one of the given states."""
        return self.current_state in states

    def get_available_transitions(self) -> list[ReconciliationState]:
        """States reachable from the current one."""
        return [t.to_state for t in self.transitions if t.from_state == self.current_state]
