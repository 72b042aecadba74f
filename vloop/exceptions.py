"""Exception hierarchy for vloop.

Exception Hierarchy:
    LooperError (base)
    ├── UnsupportedOperationError - Operation invalid for the loop's role or mode
    ├── IllegalStateError - Target loop or its owning thread can no longer accept work
    └── InterruptedWaitError - An internal wait ended before its command completed

Example:
    Catching a main-loop misuse::

        try:
            registry.main_loop.unpause()
        except UnsupportedOperationError as e:
            print(f"Not allowed: {e.message}")

    Catching any loop error::

        try:
            loop.post(callback)
        except LooperError as e:
            print(f"Loop error: {e}")
"""

from typing import Optional


class LooperError(Exception):
    """Base exception for all vloop errors.

    Attributes:
        message: Human-readable error description.
    """

    def __init__(self, message: str) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
        """
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation of the error."""
        return self.message


class UnsupportedOperationError(LooperError):
    """Operation is not valid for the loop's current role or mode.

    Raised when unpausing or quitting the main loop, controlling the main loop
    from a thread other than its owner, polling anything but the main loop, or
    calling a legacy-only API while running in PAUSED mode.

    Attributes:
        message: Human-readable error description.
        mode: The looper mode that rejected the operation, if relevant.
    """

    def __init__(self, message: str, mode: Optional[str] = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            mode: The looper mode that rejected the operation.
        """
        self.mode = mode
        super().__init__(message)


class IllegalStateError(LooperError):
    """The target loop can no longer accept or execute work.

    Raised when posting to a loop that has quit or whose owning thread is
    dead, or when preparing a second loop on the same thread.

    Attributes:
        message: Human-readable error description.
        loop_name: Name of the loop involved, if known.
    """

    def __init__(self, message: str, loop_name: Optional[str] = None) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error description.
            loop_name: Name of the loop involved.
        """
        self.loop_name = loop_name
        super().__init__(message)

    def __str__(self) -> str:
        """Return string representation including the loop name if available."""
        if self.loop_name:
            return f"{self.message} (loop: {self.loop_name})"
        return self.message


class InterruptedWaitError(LooperError):
    """An internal wait for a control command ended early.

    Only raised inside the dispatcher's plumbing. Waiters log and swallow it,
    it never reaches callers of the public API.
    """
