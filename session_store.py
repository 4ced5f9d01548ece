"""Custom-input sessions for the chat adapter.

When the consumer taps "custom answer" the adapter has to remember which
plan/decision the next free-text message belongs to.  That state lives
here, keyed by consumer id, and quietly expires after a timeout.  It is an
adapter concern: the queue itself never reads it.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable

from queue_config import QueueConfig

DEFAULT_TIMEOUT_SECONDS = 5 * 60


@dataclass(frozen=True)
class CustomInputState:
    plan_id: str
    decision_id: str
    message_id: int | None
    created: float


class CustomInputSessions:
    """Expiring map of consumer id → pending custom-input prompt."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, clock: Callable[[], float] = time.monotonic) -> None:
        self.timeout = timeout
        self._clock = clock
        self._states: dict[int, CustomInputState] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: QueueConfig) -> "CustomInputSessions":
        return cls(timeout=config.session_timeout)

    def set(self, user_id: int, plan_id: str, decision_id: str, message_id: int | None = None) -> CustomInputState:
        state = CustomInputState(plan_id, decision_id, message_id, self._clock())
        with self._lock:
            self._states[user_id] = state
        return state

    def get(self, user_id: int) -> CustomInputState | None:
        """Return the live state for *user_id*; expired entries are dropped here."""
        with self._lock:
            state = self._states.get(user_id)
            if state is None:
                return None
            if self._clock() - state.created > self.timeout:
                del self._states[user_id]
                return None
            return state

    def clear(self, user_id: int) -> None:
        with self._lock:
            self._states.pop(user_id, None)

    def is_awaiting(self, user_id: int) -> bool:
        return self.get(user_id) is not None
