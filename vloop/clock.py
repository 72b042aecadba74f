"""Virtual clock model."""

import logging
import threading
from typing import Callable, Optional

from pydantic import BaseModel, Field

from vloop.config import get_config

logger = logging.getLogger(__name__)


class VirtualClock(BaseModel):
    """Process-wide virtual time in milliseconds.

    Virtual time is completely decoupled from wall-clock time. It only moves
    when a controlling call (idle_for, run_one_task, ...) explicitly advances
    it, and it never moves backward.

    Every scheduling decision compares against this value. Loops register
    wake listeners so that threads blocked waiting for an eligible task can
    re-check after each advance.

    Args:
        current_time_ms: The current virtual time in milliseconds.
    """

    current_time_ms: int = Field(
        default=0, ge=0, description="Current virtual time in milliseconds"
    )

    class Config:
        arbitrary_types_allowed = True

    def __init__(self, **data):
        """Initialize with private attributes."""
        super().__init__(**data)
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []

    def now(self) -> int:
        """Current virtual time in milliseconds."""
        return self.current_time_ms

    def advance_to(self, new_time_ms: int) -> None:
        """Set virtual time to a specific value.

        Args:
            new_time_ms: New virtual time in milliseconds.

        Raises:
            ValueError: If new_time_ms is before the current time.
        """
        with self._lock:
            if new_time_ms < self.current_time_ms:
                raise ValueError(
                    f"Cannot set time backwards: {new_time_ms} < {self.current_time_ms}"
                )
            moved = new_time_ms != self.current_time_ms
            self.current_time_ms = new_time_ms
            listeners = list(self._listeners)

        if moved:
            logger.debug(f"Virtual clock advanced to {new_time_ms}ms")
        for listener in listeners:
            listener()

    def advance_by(self, delta_ms: int) -> None:
        """Advance virtual time by the specified delta.

        Args:
            delta_ms: Milliseconds to advance.

        Raises:
            ValueError: If delta_ms is negative.
        """
        if delta_ms < 0:
            raise ValueError("Cannot advance time backwards")

        with self._lock:
            target = self.current_time_ms + delta_ms
        self.advance_to(target)

    def add_listener(self, listener: Callable[[], None]) -> None:
        """Register a callback run after every advance."""
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        """Unregister a wake callback. Unknown listeners are ignored."""
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def reset(self, start_ms: Optional[int] = None) -> None:
        """Rewind the clock for a new test session.

        This is the only way time may move backward. Scheduling code never
        calls it; only session setup does.

        Args:
            start_ms: Value to reset to (defaults to the configured initial time).
        """
        if start_ms is None:
            start_ms = get_config().initial_time_ms
        if start_ms < 0:
            raise ValueError(f"Clock start must be non-negative, got {start_ms}")

        with self._lock:
            self.current_time_ms = start_ms
            listeners = list(self._listeners)

        logger.debug(f"Virtual clock reset to {start_ms}ms")
        for listener in listeners:
            listener()


_clock: Optional[VirtualClock] = None


def get_clock() -> VirtualClock:
    """Get the process-wide VirtualClock, creating it on first use."""
    global _clock

    if _clock is None:
        _clock = VirtualClock(current_time_ms=get_config().initial_time_ms)

    return _clock


def reset_clock() -> VirtualClock:
    """Replace the process-wide clock with a fresh one.

    Returns:
        The new VirtualClock.
    """
    global _clock
    _clock = VirtualClock(current_time_ms=get_config().initial_time_ms)
    return _clock
