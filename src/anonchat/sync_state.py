"""
AnonChat - Conversation sync state machine.

This module implements the lifecycle of a conversation view:

    IDLE -> LOADING -> LIVE -> CLOSED

LOADING falls back to IDLE when the history fetch fails so the caller can
retry. Any non-closed state may be closed. Transitions are validated against
an explicit table and recorded for diagnostics.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .constants import SYNC_MAX_HISTORY

logger = logging.getLogger(__name__)


class SyncState(Enum):
    """States of a conversation sync."""

    IDLE = auto()  # Created, nothing fetched yet
    LOADING = auto()  # Fetching and decrypting history
    LIVE = auto()  # History materialized, live feed folded in
    CLOSED = auto()  # Live feed released; terminal


class SyncEvent(Enum):
    """Events that trigger state transitions."""

    START_REQUESTED = auto()
    HISTORY_LOADED = auto()
    HISTORY_FAILED = auto()
    CLOSE_REQUESTED = auto()


@dataclass
class StateTransition:
    """Represents a state transition."""

    from_state: SyncState
    event: SyncEvent
    to_state: SyncState
    timestamp: float = field(default_factory=time.time)


class SyncStateMachine:
    """
    Finite state machine for a conversation sync.

    Enforces valid state transitions and tracks state history.
    """

    TRANSITIONS: Dict[SyncState, Dict[SyncEvent, SyncState]] = {
        SyncState.IDLE: {
            SyncEvent.START_REQUESTED: SyncState.LOADING,
            SyncEvent.CLOSE_REQUESTED: SyncState.CLOSED,
        },
        SyncState.LOADING: {
            SyncEvent.HISTORY_LOADED: SyncState.LIVE,
            SyncEvent.HISTORY_FAILED: SyncState.IDLE,
            SyncEvent.CLOSE_REQUESTED: SyncState.CLOSED,
        },
        SyncState.LIVE: {
            SyncEvent.CLOSE_REQUESTED: SyncState.CLOSED,
        },
        SyncState.CLOSED: {},
    }

    def __init__(self, initial_state: SyncState = SyncState.IDLE):
        self.current_state = initial_state
        self.previous_state: Optional[SyncState] = None
        self.state_entry_time = time.time()
        self.transition_history: List[StateTransition] = []
        self.max_history = SYNC_MAX_HISTORY

        # Callbacks
        self.on_state_change: Optional[Callable[[SyncState, SyncState], None]] = None

    def transition(self, event: SyncEvent) -> bool:
        """
        Attempt state transition based on event.

        Returns:
            True if transition successful, False otherwise
        """
        if not self.is_valid_transition(self.current_state, event):
            logger.debug(f"Invalid transition: {self.current_state.name} + {event.name}")
            return False

        old_state = self.current_state
        new_state = self.TRANSITIONS[old_state][event]
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self.transition_history.append(StateTransition(old_state, event, new_state))
        if len(self.transition_history) > self.max_history:
            self.transition_history = self.transition_history[-self.max_history :]

        logger.debug(f"Sync state: {old_state.name} -> {new_state.name} (event: {event.name})")

        if self.on_state_change:
            try:
                self.on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

        return True

    def is_valid_transition(self, from_state: SyncState, event: SyncEvent) -> bool:
        """Check if a transition is valid."""
        return event in self.TRANSITIONS.get(from_state, {})

    def get_state(self) -> SyncState:
        """Get current state."""
        return self.current_state

    def is_live(self) -> bool:
        return self.current_state == SyncState.LIVE

    def is_closed(self) -> bool:
        return self.current_state == SyncState.CLOSED

    def get_time_in_state(self) -> float:
        """Get time spent in current state (seconds)."""
        return time.time() - self.state_entry_time

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """Get recent transition history."""
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """Get state machine statistics."""
        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "total_transitions": len(self.transition_history),
        }

    def __repr__(self) -> str:
        return f"SyncStateMachine(state={self.current_state.name})"
