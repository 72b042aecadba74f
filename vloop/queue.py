"""Task queue and idle handler models."""

import bisect
import itertools
import threading
from typing import TYPE_CHECKING, Any, Callable, Optional

from pydantic import BaseModel, Field

from vloop.exceptions import IllegalStateError
from vloop.task import LoopTask

if TYPE_CHECKING:
    from vloop.clock import VirtualClock

IdleHandler = Callable[[], bool]


class IdleHandlerRegistry:
    """Callbacks fired when a queue runs out of eligible work.

    Handlers are kept in registration order. Mutation and snapshots happen
    under the owning queue's lock; invocation happens after the lock is
    released, so a handler may freely post to or control its loop.
    """

    def __init__(self, lock: threading.Condition) -> None:
        self._lock = lock
        self._handlers: list[IdleHandler] = []

    def add(self, handler: IdleHandler) -> None:
        """Register a handler.

        Raises:
            TypeError: If handler is not callable.
        """
        if not callable(handler):
            raise TypeError(f"Idle handler must be callable, got {type(handler).__name__}")
        with self._lock:
            self._handlers.append(handler)

    def remove(self, handler: IdleHandler) -> bool:
        """Unregister a handler. Returns whether it was registered."""
        with self._lock:
            # Equality, not identity: each obj.method access is a new bound method
            try:
                self._handlers.remove(handler)
            except ValueError:
                return False
            return True

    def snapshot(self) -> list[IdleHandler]:
        """Copy of the registered handlers, in registration order."""
        with self._lock:
            return list(self._handlers)

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)


class TaskQueue(BaseModel):
    """Ordered queue of pending tasks for one loop.

    Tasks are kept sorted by ``(scheduled_time, sequence)``. The queue owns
    the loop's queue lock, a reentrant condition that every mutation holds
    and that blocked owning threads wait on. The Loop takes the same lock
    when it needs several queue operations to be atomic.

    Executed tasks are removed as they are popped; the queue only ever holds
    work that has not run yet.

    Args:
        loop_id: Identifier of the owning loop.
        tasks: Pending tasks, sorted by (scheduled_time, sequence).
    """

    loop_id: str = Field(description="Identifier of the owning loop")
    tasks: list[LoopTask] = Field(
        default_factory=list,
        description="Pending tasks, sorted by (scheduled_time, sequence)",
    )

    class Config:
        arbitrary_types_allowed = True

    def __init__(self, **data):
        """Initialize with private attributes."""
        super().__init__(**data)
        self._condition = threading.Condition(threading.RLock())
        self._sequence = itertools.count()
        self._front_sequence = itertools.count(-1, -1)
        self._quitting = False
        self._polling = False
        self._idle_handlers = IdleHandlerRegistry(self._condition)

    # ===== Properties =====

    @property
    def lock(self) -> threading.Condition:
        """The queue lock."""
        return self._condition

    @property
    def idle_handlers(self) -> IdleHandlerRegistry:
        return self._idle_handlers

    @property
    def pending_count(self) -> int:
        """Number of tasks that have not run or been cancelled."""
        with self._condition:
            return sum(1 for t in self.tasks if not t.cancelled)

    @property
    def is_polling(self) -> bool:
        """Whether the owning thread is currently blocked waiting for work."""
        return self._polling

    @property
    def is_quitting(self) -> bool:
        return self._quitting

    # ===== Enqueue =====

    def schedule(
        self,
        payload: Callable[[], Any],
        scheduled_time: int,
        token: Optional[Any] = None,
        is_control: bool = False,
    ) -> LoopTask:
        """Create a task at ``scheduled_time`` and enqueue it.

        Args:
            payload: Callable to run.
            scheduled_time: Virtual time (ms) when the task becomes eligible.
            token: Optional target identity for bulk removal.
            is_control: Whether the task carries a control command.

        Returns:
            The enqueued task.

        Raises:
            IllegalStateError: If the queue is quitting.
        """
        with self._condition:
            task = LoopTask(
                payload=payload,
                scheduled_time=scheduled_time,
                sequence=next(self._sequence),
                owning_loop=self.loop_id,
                token=token,
                is_control=is_control,
            )
            self.enqueue(task)
            return task

    def schedule_at_front(
        self,
        payload: Callable[[], Any],
        now: int,
        token: Optional[Any] = None,
        is_control: bool = False,
    ) -> LoopTask:
        """Create a task that sorts ahead of every pending task and enqueue it.

        The task is scheduled no later than ``now`` and no later than the
        current head, and takes a negative sequence, so it is both eligible
        and first in line.
        """
        with self._condition:
            head = self._peek_locked()
            scheduled_time = now if head is None else min(now, head.scheduled_time)
            task = LoopTask(
                payload=payload,
                scheduled_time=scheduled_time,
                sequence=next(self._front_sequence),
                owning_loop=self.loop_id,
                token=token,
                is_control=is_control,
            )
            self.enqueue(task)
            return task

    def enqueue(self, task: LoopTask) -> None:
        """Insert a task preserving order and wake any waiting thread.

        Raises:
            IllegalStateError: If the queue is quitting.
            ValueError: If the task belongs to another loop.
        """
        if task.owning_loop != self.loop_id:
            raise ValueError(
                f"Task belongs to loop {task.owning_loop}, not {self.loop_id}"
            )

        with self._condition:
            if self._quitting:
                raise IllegalStateError(
                    "Cannot enqueue on a loop that is quitting", loop_name=self.loop_id
                )
            index = bisect.bisect_right(
                self.tasks, task.sort_key, key=lambda t: t.sort_key
            )
            self.tasks.insert(index, task)
            self._condition.notify_all()

    # ===== Retrieval =====

    def peek_next(self) -> Optional[LoopTask]:
        """Earliest pending task, eligible or not, without removing it."""
        with self._condition:
            return self._peek_locked()

    def peek_last(self) -> Optional[LoopTask]:
        """Latest pending task without removing it."""
        with self._condition:
            self._purge_cancelled_locked()
            return self.tasks[-1] if self.tasks else None

    def pop_next_eligible(self, now: int) -> Optional[LoopTask]:
        """Remove and return the earliest task with scheduled_time <= now.

        Never blocks. Returns None when no task is eligible.
        """
        with self._condition:
            head = self._peek_locked()
            if head is None or head.scheduled_time > now:
                return None
            return self.tasks.pop(0)

    def pop_next_ignoring_eligibility(self) -> Optional[LoopTask]:
        """Remove and return the earliest task regardless of its time."""
        with self._condition:
            if self._peek_locked() is None:
                return None
            return self.tasks.pop(0)

    def next_scheduled_time(self, now: int) -> Optional[int]:
        """Milliseconds from ``now`` until the earliest task, or None if empty.

        Already-eligible tasks report 0.
        """
        head = self.peek_next()
        if head is None:
            return None
        return max(0, head.scheduled_time - now)

    def last_scheduled_time(self, now: int) -> Optional[int]:
        """Milliseconds from ``now`` until the latest task, or None if empty."""
        tail = self.peek_last()
        if tail is None:
            return None
        return max(0, tail.scheduled_time - now)

    def is_idle(self, now: int, ignore_control: bool = False) -> bool:
        """True iff no pending task is eligible at ``now``.

        Args:
            now: Virtual time to check eligibility against.
            ignore_control: Whether eligible control tasks are disregarded,
                so only user work counts.
        """
        with self._condition:
            if not ignore_control:
                head = self._peek_locked()
                return head is None or head.scheduled_time > now
            for task in self.tasks:
                if task.scheduled_time > now:
                    break
                if not task.cancelled and not task.is_control:
                    return False
            return True

    def take_next(self, clock: "VirtualClock") -> Optional[LoopTask]:
        """Block until a task is eligible, then remove and return it.

        Used by the owning thread's native loop. While blocked the queue
        reports ``is_polling``. Returns None once the queue is quitting and
        nothing eligible remains.

        Args:
            clock: Clock that decides eligibility.
        """
        with self._condition:
            while True:
                task = self.pop_next_eligible(clock.now())
                if task is not None:
                    return task
                if self._quitting:
                    return None
                self._polling = True
                try:
                    self._condition.wait()
                finally:
                    self._polling = False

    def poll(self, clock: "VirtualClock", timeout_ms: int = 0) -> None:
        """Block until a task becomes eligible or the timeout elapses.

        Returns immediately if the queue is not idle. There is no guarantee
        the queue is non-idle on return; callers re-check and loop.

        Args:
            clock: Clock that decides eligibility.
            timeout_ms: Wall-clock timeout in ms, 0 to wait indefinitely.

        Raises:
            ValueError: If timeout_ms is negative.
        """
        if timeout_ms < 0:
            raise ValueError(f"Poll timeout must be non-negative, got {timeout_ms}")

        timeout = timeout_ms / 1000.0 if timeout_ms > 0 else None
        with self._condition:
            self._polling = True
            try:
                self._condition.wait_for(
                    lambda: self._quitting or not self.is_idle(clock.now()),
                    timeout=timeout,
                )
            finally:
                self._polling = False

    def wake(self) -> None:
        """Wake threads blocked in take_next() or poll() so they re-check."""
        with self._condition:
            self._condition.notify_all()

    # ===== Removal =====

    def remove_all_matching(self, predicate: Callable[[LoopTask], bool]) -> int:
        """Remove and cancel every pending task matching ``predicate``.

        Returns:
            Number of tasks removed.
        """
        with self._condition:
            kept = []
            removed = 0
            for task in self.tasks:
                if not task.cancelled and predicate(task):
                    task.cancel()
                    removed += 1
                else:
                    kept.append(task)
            self.tasks = kept
            return removed

    def quit(self, now: int, safe: bool = True) -> int:
        """Stop accepting tasks and wake the owning thread.

        A safe quit drops only tasks scheduled after ``now``, so work that is
        already eligible still runs. An unsafe quit drops everything.

        Returns:
            Number of tasks dropped.
        """
        with self._condition:
            if self._quitting:
                return 0
            self._quitting = True
            if safe:
                dropped = self.remove_all_matching(lambda t: t.scheduled_time > now)
            else:
                dropped = self.remove_all_matching(lambda t: True)
            self._condition.notify_all()
            return dropped

    def reset(self) -> int:
        """Drop every pending task and idle handler.

        Returns:
            Number of tasks dropped.
        """
        with self._condition:
            dropped = self.remove_all_matching(lambda t: True)
            self._idle_handlers.clear()
            self._condition.notify_all()
            return dropped

    def validate(self) -> list[str]:
        """Validate queue consistency.

        Checks:
        - Tasks are sorted by (scheduled_time, sequence)
        - No duplicate sequences
        - Every task belongs to this queue's loop

        Returns:
            List of validation errors (empty if valid).
        """
        errors = []
        with self._condition:
            sequences = [t.sequence for t in self.tasks]
            if len(sequences) != len(set(sequences)):
                errors.append("Duplicate task sequences found")

            for i in range(len(self.tasks) - 1):
                if self.tasks[i].sort_key > self.tasks[i + 1].sort_key:
                    errors.append(
                        f"Tasks not sorted: task {i} {self.tasks[i].sort_key} "
                        f"is after task {i+1} {self.tasks[i + 1].sort_key}"
                    )

            for task in self.tasks:
                if task.owning_loop != self.loop_id:
                    errors.append(
                        f"Task {task.sequence} belongs to loop {task.owning_loop}"
                    )

        return errors

    # ===== Internal =====

    def _peek_locked(self) -> Optional[LoopTask]:
        self._purge_cancelled_locked()
        return self.tasks[0] if self.tasks else None

    def _purge_cancelled_locked(self) -> None:
        # Tasks cancelled directly via LoopTask.cancel() stay in place until here
        if any(t.cancelled for t in self.tasks):
            self.tasks = [t for t in self.tasks if not t.cancelled]
