"""Single-slot mutual exclusion for background jobs."""

from dataclasses import dataclass
from enum import StrEnum


class GuardState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class SingleSlotGuard:
    """Allows at most one holder; a second acquirer is refused, not queued."""

    name: str
    _state: GuardState = GuardState.IDLE

    @property
    def state(self) -> GuardState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is GuardState.RUNNING

    def try_acquire(self) -> bool:
        """Take the slot if it is free."""
        if self._state is GuardState.RUNNING:
            return False
        self._state = GuardState.RUNNING
        return True

    def release(self) -> None:
        self._state = GuardState.IDLE
