"""
SecureChat - Session State Machine for peer connection lifecycle.

This module implements a formal finite state machine for the lifecycle of
one peer session. Provides proper state transitions, validation, and event
handling. Timeouts are owned by the session (see session.py); this module
only decides which transitions are legal.
"""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from .constants import SESSION_HISTORY_SIZE

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of a peer session."""

    IDLE = auto()  # No transport connection
    CONNECTING = auto()  # Waiting for the channel to open
    CONNECTED = auto()  # Channel open, handshake may be in flight
    CLOSED = auto()  # Channel closed after being connected
    ERROR = auto()  # Transport error or failed connect, not reusable


class SessionEvent(Enum):
    """Events that trigger state transitions."""

    CONNECT_REQUESTED = auto()  # Local side called connect
    INCOMING_CONNECTION = auto()  # Remote side connected to us
    CHANNEL_OPENED = auto()  # Transport signaled open
    CONNECT_TIMEOUT = auto()  # Channel did not open in time
    CONNECT_CANCELLED = auto()  # Local side gave up before open
    CHANNEL_CLOSED = auto()  # Transport signaled close
    ERROR_OCCURRED = auto()  # Transport signaled an error
    CLOSE_REQUESTED = auto()  # Local side closed the session


@dataclass
class StateTransition:
    """One accepted transition."""

    from_state: SessionState
    event: SessionEvent
    to_state: SessionState
    timestamp: float = field(default_factory=time.time)


class SessionStateMachine:
    """
    Lifecycle of one peer session.

    Only the transitions listed in TRANSITIONS are accepted; anything else
    is logged and refused. CLOSED and ERROR are terminal.
    """

    TRANSITIONS: Dict[SessionState, Dict[SessionEvent, SessionState]] = {
        SessionState.IDLE: {
            SessionEvent.CONNECT_REQUESTED: SessionState.CONNECTING,
            SessionEvent.INCOMING_CONNECTION: SessionState.CONNECTING,
        },
        SessionState.CONNECTING: {
            SessionEvent.CHANNEL_OPENED: SessionState.CONNECTED,
            SessionEvent.CONNECT_TIMEOUT: SessionState.ERROR,
            SessionEvent.CHANNEL_CLOSED: SessionState.ERROR,
            SessionEvent.ERROR_OCCURRED: SessionState.ERROR,
            SessionEvent.CONNECT_CANCELLED: SessionState.IDLE,
        },
        SessionState.CONNECTED: {
            SessionEvent.CHANNEL_CLOSED: SessionState.CLOSED,
            SessionEvent.CLOSE_REQUESTED: SessionState.CLOSED,
            SessionEvent.ERROR_OCCURRED: SessionState.ERROR,
        },
        SessionState.CLOSED: {},
        SessionState.ERROR: {},
    }

    def __init__(self, initial_state: SessionState = SessionState.IDLE):
        self.current_state = initial_state
        self.previous_state: Optional[SessionState] = None
        self.state_entry_time = time.time()
        self.error_message: Optional[str] = None
        self.transition_history: List[StateTransition] = []
        self.max_history = SESSION_HISTORY_SIZE

        # Callbacks
        self.on_state_change: Optional[Callable[[SessionState, SessionState], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

        logger.debug(f"State machine initialized in state: {self.current_state.name}")

    def transition(self, event: SessionEvent, error_msg: Optional[str] = None) -> bool:
        """
        Apply event to the current state.

        error_msg is kept as the error message when the event leads to ERROR.
        Returns False, leaving the state untouched, when the event is not
        accepted in the current state.
        """
        new_state = self.TRANSITIONS.get(self.current_state, {}).get(event)
        if new_state is None:
            logger.warning(f"Ignoring {event.name} in state {self.current_state.name}")
            return False

        if new_state == SessionState.ERROR:
            self.error_message = error_msg or "Unknown error"
        elif new_state == SessionState.CONNECTED:
            self.error_message = None

        old_state = self.current_state
        self.previous_state = old_state
        self.current_state = new_state
        self.state_entry_time = time.time()

        self._record(StateTransition(old_state, event, new_state))

        logger.info(f"Session {old_state.name} -> {new_state.name} on {event.name}")

        self._notify(self.on_state_change, old_state, new_state)
        if new_state == SessionState.ERROR:
            self._notify(self.on_error, self.error_message)

        return True

    def _record(self, step: StateTransition) -> None:
        self.transition_history.append(step)
        overflow = len(self.transition_history) - self.max_history
        if overflow > 0:
            del self.transition_history[:overflow]

    @staticmethod
    def _notify(callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Session callback {callback!r} failed: {e}", exc_info=True)

    def get_state(self) -> SessionState:
        return self.current_state

    def get_previous_state(self) -> Optional[SessionState]:
        return self.previous_state

    def get_time_in_state(self) -> float:
        """Seconds since the last transition."""
        return time.time() - self.state_entry_time

    def is_connected(self) -> bool:
        return self.current_state == SessionState.CONNECTED

    def is_connecting(self) -> bool:
        return self.current_state == SessionState.CONNECTING

    def is_terminal(self) -> bool:
        """Check if the session can no longer change state."""
        return self.current_state in (SessionState.CLOSED, SessionState.ERROR)

    def is_error(self) -> bool:
        return self.current_state == SessionState.ERROR

    def get_error_message(self) -> Optional[str]:
        return self.error_message

    def get_history(self, count: int = 10) -> List[StateTransition]:
        """Return up to count of the most recent transitions, oldest first."""
        return self.transition_history[-count:]

    def get_statistics(self) -> Dict[str, Any]:
        """Summary of the current state and the recorded transitions."""
        event_counts = Counter(step.event.name for step in self.transition_history)

        return {
            "current_state": self.current_state.name,
            "previous_state": self.previous_state.name if self.previous_state else None,
            "time_in_state": self.get_time_in_state(),
            "error_message": self.error_message,
            "total_transitions": len(self.transition_history),
            "event_counts": dict(event_counts),
            "is_connected": self.is_connected(),
            "is_connecting": self.is_connecting(),
            "is_error": self.is_error(),
        }

    def __repr__(self) -> str:
        return (
            f"SessionStateMachine(state={self.current_state.name}, "
            f"time_in_state={self.get_time_in_state():.1f}s)"
        )
