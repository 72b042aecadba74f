"""Loop task model."""

from typing import Any, Callable, Optional

from pydantic import BaseModel, Field


class LoopTask(BaseModel):
    """A unit of work queued on one loop.

    Tasks execute in ``(scheduled_time, sequence)`` order. ``sequence`` is
    assigned by the owning TaskQueue at creation and breaks ties between
    tasks scheduled for the same millisecond. Tasks posted to the front of
    the queue get negative sequences so they sort ahead of everything else.

    Args:
        payload: Callable run when the task is dispatched.
        scheduled_time: Virtual time (ms) at which the task becomes eligible.
        sequence: Tie-breaker, unique within the owning queue.
        owning_loop: Identifier of the loop that owns this task.
        token: Optional value identifying the task's target, for bulk removal.
        is_control: Whether the task carries a control command.
        cancelled: Whether the task was removed before it ran.
    """

    payload: Callable[[], Any] = Field(description="Callable run on dispatch")
    scheduled_time: int = Field(
        ge=0, description="Virtual time (ms) when the task becomes eligible"
    )
    sequence: int = Field(description="Tie-breaker assigned at enqueue time")
    owning_loop: str = Field(description="Identifier of the owning loop")
    token: Optional[Any] = Field(
        default=None, description="Target identity used for bulk removal"
    )
    is_control: bool = Field(
        default=False, description="Whether this task carries a control command"
    )
    cancelled: bool = Field(
        default=False, description="Whether the task was removed before running"
    )

    class Config:
        arbitrary_types_allowed = True

    @property
    def sort_key(self) -> tuple[int, int]:
        """Ordering key within the owning queue."""
        return (self.scheduled_time, self.sequence)

    def is_eligible(self, now: int) -> bool:
        """Check whether this task may run at virtual time ``now``."""
        return not self.cancelled and self.scheduled_time <= now

    def run(self) -> Any:
        """Invoke the payload.

        Exceptions raised by the payload propagate to the caller.

        Raises:
            RuntimeError: If the task was cancelled.
        """
        if self.cancelled:
            raise RuntimeError(
                f"Cannot run cancelled task {self.sequence} of loop {self.owning_loop}"
            )
        return self.payload()

    def cancel(self) -> None:
        """Mark this task as cancelled so it never runs."""
        self.cancelled = True

    def get_summary(self) -> str:
        """Return a short description for logging.

        Example: "task#3@150ms (loop-worker)"
        """
        kind = "control" if self.is_control else "task"
        return f"{kind}#{self.sequence}@{self.scheduled_time}ms ({self.owning_loop})"
