"""Controllable event loop.

A Loop owns one TaskQueue and is bound to one owning thread. Background
loops run a native dispatch loop on their own thread and execute eligible
tasks as the virtual clock reaches them, unless paused. The main loop has
no thread of its own: it is always paused and is driven synchronously by
idle(), idle_for() and run_one_task() on the main thread.

Control operations always execute on the owning thread. When called from
elsewhere they are marshalled through the loop's CrossThreadDispatcher and
the caller blocks until they finish.
"""

import logging
import threading
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Optional, Union

from vloop.clock import VirtualClock
from vloop.config import LooperConfig, LooperMode, get_config
from vloop.dispatcher import (
    ControlCommand,
    CrossThreadDispatcher,
    PausedExecutor,
    UnpauseCommand,
)
from vloop.exceptions import IllegalStateError, UnsupportedOperationError
from vloop.queue import IdleHandler, TaskQueue
from vloop.task import LoopTask

logger = logging.getLogger(__name__)

Duration = Union[int, timedelta]


class LoopState(str, Enum):
    """Lifecycle state of a loop."""

    UNINITIALIZED = "uninitialized"
    UNPAUSED = "unpaused"
    PAUSED = "paused"
    QUIT = "quit"


def to_millis(duration: Duration) -> int:
    """Convert a timedelta, or an int already in milliseconds, to int ms."""
    if isinstance(duration, timedelta):
        return duration // timedelta(milliseconds=1)
    return int(duration)


class IdleCommand(ControlCommand):
    """Drains every eligible task."""

    def __init__(self, loop: "Loop") -> None:
        super().__init__()
        self._loop = loop

    def perform(self) -> None:
        self._loop._drain()


class RunOneCommand(ControlCommand):
    """Runs the single earliest task, moving the clock up to it."""

    def __init__(self, loop: "Loop") -> None:
        super().__init__()
        self._loop = loop

    def perform(self) -> None:
        self._loop._run_one()


class Loop:
    """A controllable, deterministic event loop.

    Responsibilities:
    - Task posting (delayed, at front) and removal
    - Draining eligible tasks and single-stepping under virtual time
    - Pause/unpause state machine for background loops
    - Idle handler invocation after the queue runs dry
    - Native dispatch on the owning thread (loop())

    Attributes:
        loop_id: Unique identifier of this loop.
        name: Human-readable name.
        clock: The shared virtual clock.
        config: Process configuration.
        is_main: Whether this is the distinguished main loop.
        owning_thread: The thread every control command runs on.
        queue: Pending tasks and idle handlers.
        dispatcher: Cross-thread command channel.
    """

    def __init__(
        self,
        name: str,
        clock: VirtualClock,
        config: Optional[LooperConfig] = None,
        is_main: bool = False,
        owning_thread: Optional[threading.Thread] = None,
        on_exit: Optional[Callable[["Loop"], None]] = None,
    ) -> None:
        """Initialize a loop bound to ``owning_thread``.

        Args:
            name: Human-readable name, used in logs and errors.
            clock: The shared virtual clock.
            config: Process configuration (defaults to get_config()).
            is_main: Whether this is the main loop. The main loop starts PAUSED.
            owning_thread: Thread that owns the loop (defaults to the current thread).
            on_exit: Called once after the native loop exits.
        """
        self.loop_id = f"{name}-{uuid.uuid4().hex[:8]}"
        self.name = name
        self.clock = clock
        self.config = config or get_config()
        self.is_main = is_main
        self.owning_thread = owning_thread or threading.current_thread()
        self.queue = TaskQueue(loop_id=self.loop_id)
        self.dispatcher = CrossThreadDispatcher(self)

        self._state = LoopState.PAUSED if is_main else LoopState.UNINITIALIZED
        self._control_lock = threading.Lock()
        self._on_exit = on_exit
        self._released = False

        self.clock.add_listener(self.queue.wake)

    def __repr__(self) -> str:
        return f"Loop(name={self.name!r}, state={self._state.value}, main={self.is_main})"

    # ===== State =====

    @property
    def state(self) -> LoopState:
        return self._state

    def is_paused(self) -> bool:
        return self._state is LoopState.PAUSED

    def is_on_owning_thread(self) -> bool:
        return threading.current_thread() is self.owning_thread

    def is_idle(self) -> bool:
        """Whether the loop has no eligible work.

        Checked from another thread on an unpaused loop, the owning thread
        must also be blocked waiting for work; otherwise it may still be
        in the middle of a task.
        """
        now = self.clock.now()
        if self.is_on_owning_thread() or self.is_paused():
            return self.queue.is_idle(now)
        return self.queue.is_idle(now) and self.queue.is_polling

    # ===== Execution Control =====

    def idle(self) -> None:
        """Run every task that is eligible now, then the idle handlers."""
        self.dispatcher.execute(IdleCommand(self))

    def idle_if_paused(self) -> None:
        self.idle()

    def idle_for(self, duration: Duration) -> None:
        """Advance virtual time by ``duration``, running tasks as they come due.

        The clock is moved to each pending task's time in turn and the loop
        idled there, so tasks run in (scheduled_time, sequence) order and
        nothing scheduled after now+duration runs. The clock finishes at
        exactly now+duration, followed by one more idle for anything the
        final move made eligible.

        Args:
            duration: timedelta, or int milliseconds. Must be non-negative.

        Raises:
            ValueError: If duration is negative.
            UnsupportedOperationError: If this is the main loop and the caller
                is not on the main thread.
        """
        duration_ms = to_millis(duration)
        if duration_ms < 0:
            raise ValueError(f"Duration must be non-negative, got {duration_ms}ms")
        self._check_controllable()

        end_time = self.clock.now() + duration_ms
        next_time = self._next_task_time()
        while next_time is not None and next_time <= end_time:
            self.clock.advance_to(max(next_time, self.clock.now()))
            self.idle()
            next_time = self._next_task_time()

        self.clock.advance_to(max(end_time, self.clock.now()))
        self.idle()

    def run_one_task(self) -> None:
        """Run the earliest task even if it is not yet due.

        The clock jumps forward to the task's scheduled time. Does nothing
        if the queue is empty.
        """
        self.dispatcher.execute(RunOneCommand(self))

    def run_to_next_task(self) -> None:
        """idle_for() up to the next scheduled task."""
        self.idle_for(self.next_scheduled_task_time())

    def run_to_end_of_tasks(self) -> None:
        """idle_for() up to the last scheduled task."""
        self.idle_for(self.last_scheduled_task_time())

    def next_scheduled_task_time(self) -> int:
        """Milliseconds until the next task is due (0 if due now or none)."""
        return self.queue.next_scheduled_time(self.clock.now()) or 0

    def last_scheduled_task_time(self) -> int:
        """Milliseconds until the last task is due (0 if due now or none)."""
        return self.queue.last_scheduled_time(self.clock.now()) or 0

    # ===== Pause Control =====

    def pause(self) -> None:
        """Stop the loop from dispatching tasks on its own.

        No-op if already paused.

        Raises:
            UnsupportedOperationError: If the process is not in PAUSED mode.
            IllegalStateError: If the loop has quit.
        """
        if self.config.looper_mode is not LooperMode.PAUSED:
            raise UnsupportedOperationError(
                f"pause is not supported in {self.config.looper_mode.value.upper()} mode.",
                mode=self.config.looper_mode.value,
            )
        if self._state is LoopState.QUIT:
            raise IllegalStateError("Cannot pause a loop that has quit", loop_name=self.name)
        if self.is_paused():
            return

        if self.is_on_owning_thread():
            # Blocks here, draining commands, until another thread unpauses
            self.dispatcher.execute(PausedExecutor(self))
            return

        with self._control_lock:
            if self.is_paused():
                return
            self.dispatcher.execute(PausedExecutor(self))

    def unpause(self) -> None:
        """Let the loop dispatch tasks on its own again.

        Raises:
            UnsupportedOperationError: If this is the main loop.
        """
        if self.is_main:
            raise UnsupportedOperationError("main loop cannot be unpaused")
        if not self.is_paused():
            logger.debug(f"unpause() ignored: loop {self.name} is {self._state.value}")
            return

        if self.is_on_owning_thread():
            self.dispatcher.execute(UnpauseCommand(self))
            return

        with self._control_lock:
            if self.is_paused():
                self.dispatcher.execute(UnpauseCommand(self))

    def set_paused(self, should_pause: bool) -> bool:
        if should_pause:
            self.pause()
        else:
            self.unpause()
        return True

    def run_paused(self, runnable: Callable[[], Any]) -> Any:
        """Run ``runnable`` immediately on a paused loop's own thread.

        Raises:
            UnsupportedOperationError: If the loop is not paused or the caller
                is not the owning thread.
        """
        if self.is_paused() and self.is_on_owning_thread():
            return runnable()
        raise UnsupportedOperationError(
            "run_paused requires a paused loop and its owning thread"
        )

    # ===== Task Management =====

    def post(
        self, payload: Callable[[], Any], delay: Duration = 0, token: Optional[Any] = None
    ) -> LoopTask:
        """Queue ``payload`` to run ``delay`` after the current virtual time.

        Args:
            payload: Callable to run on the owning thread.
            delay: timedelta, or int milliseconds. Must be non-negative.
            token: Optional target identity, usable with remove_tasks().

        Returns:
            The queued task.

        Raises:
            ValueError: If delay is negative.
            IllegalStateError: If the loop has quit or its thread is dead.
        """
        delay_ms = to_millis(delay)
        if delay_ms < 0:
            raise ValueError(f"Delay must be non-negative, got {delay_ms}ms")
        self._check_accepting()

        task = self.queue.schedule(payload, self.clock.now() + delay_ms, token=token)
        logger.debug(f"Posted {task.get_summary()}")
        return task

    def post_at_front(
        self, payload: Callable[[], Any], token: Optional[Any] = None
    ) -> LoopTask:
        """Queue ``payload`` ahead of every pending task.

        Raises:
            IllegalStateError: If the loop has quit or its thread is dead.
        """
        self._check_accepting()

        task = self.queue.schedule_at_front(payload, self.clock.now(), token=token)
        logger.debug(f"Posted at front {task.get_summary()}")
        return task

    def remove_tasks(self, predicate: Callable[[LoopTask], bool]) -> int:
        """Remove pending tasks matching ``predicate``. Returns the count."""
        return self.queue.remove_all_matching(predicate)

    def add_idle_handler(self, handler: IdleHandler) -> None:
        self.queue.idle_handlers.add(handler)

    def remove_idle_handler(self, handler: IdleHandler) -> bool:
        return self.queue.idle_handlers.remove(handler)

    # ===== Lifecycle =====

    def quit(self) -> None:
        """Stop the loop, discarding every pending task."""
        self._quit(safe=False)

    def quit_safely(self) -> None:
        """Stop the loop once tasks that are already due have run."""
        self._quit(safe=True)

    def poll(self, timeout_ms: int = 0) -> None:
        """Block the main thread until a task is eligible or the timeout elapses.

        Returns immediately if the queue is not idle. There is no guarantee
        the queue is non-idle on return, so callers loop::

            while not condition():
                main_loop.poll(timeout)
                main_loop.idle()

        Args:
            timeout_ms: Wall-clock timeout in ms, 0 to wait indefinitely.

        Raises:
            UnsupportedOperationError: Unless called on the main loop from
                its owning thread.
        """
        if not (self.is_main and self.is_on_owning_thread()):
            raise UnsupportedOperationError(
                "poll is only supported for the main loop on the main thread"
            )
        self.queue.poll(self.clock, timeout_ms)

    def loop(self, started: Optional[threading.Event] = None) -> None:
        """Run the native dispatch loop until the loop quits.

        Blocks the owning thread, dispatching each task as it becomes
        eligible. A task that raises terminates the loop and the exception
        propagates, unless ignore_uncaught_exceptions is configured.

        Args:
            started: Set once the loop is UNPAUSED and about to dispatch.

        Raises:
            IllegalStateError: If not called on the owning thread.
            UnsupportedOperationError: If this is the main loop.
        """
        if self.is_main:
            raise UnsupportedOperationError("main loop is driven by idle(), not loop()")
        if not self.is_on_owning_thread():
            raise IllegalStateError(
                "loop() must run on the owning thread", loop_name=self.name
            )

        if self._state is LoopState.UNINITIALIZED:
            self._state = LoopState.UNPAUSED
        logger.info(f"Loop {self.name} started on thread {self.owning_thread.name}")
        if started is not None:
            started.set()

        try:
            while True:
                task = self.queue.take_next(self.clock)
                if task is None:
                    break
                try:
                    self._dispatch(task)
                except Exception as e:
                    if not self.config.ignore_uncaught_exceptions:
                        raise
                    logger.error(
                        f"Ignoring uncaught exception in {task.get_summary()}: {e}",
                        exc_info=True,
                    )
                self._trigger_idle_handlers_if_needed(task)
        except Exception as e:
            logger.error(
                f"Loop {self.name} terminated by uncaught exception: {e}",
                exc_info=True,
            )
            raise
        finally:
            self._state = LoopState.QUIT
            self.queue.quit(self.clock.now(), safe=False)
            self.release()
            logger.info(f"Loop {self.name} exited")

    def release(self) -> None:
        """Detach from the clock and notify the owner. Idempotent."""
        if self._released:
            return
        self._released = True
        self.clock.remove_listener(self.queue.wake)
        if self._on_exit is not None:
            self._on_exit(self)

    # ===== Legacy-only APIs =====

    def reset_scheduler(self) -> None:
        self._unsupported_in_mode()

    def idle_constantly(self, should_idle_constantly: bool) -> None:
        self._unsupported_in_mode()

    def get_scheduler(self) -> Any:
        self._unsupported_in_mode()

    def quit_unchecked(self) -> None:
        self._unsupported_in_mode()

    def has_quit(self) -> bool:
        self._unsupported_in_mode()

    # ===== Owning-thread internals =====

    def _drain(self) -> None:
        while True:
            task = self.queue.pop_next_eligible(self.clock.now())
            if task is None:
                break
            self._dispatch(task)
            self._trigger_idle_handlers_if_needed(task)

    def _run_one(self) -> None:
        task = self.queue.pop_next_ignoring_eligibility()
        if task is None:
            return
        self.clock.advance_to(max(task.scheduled_time, self.clock.now()))
        self._dispatch(task)
        self._trigger_idle_handlers_if_needed(task)

    def _dispatch(self, task: LoopTask) -> None:
        logger.debug(f"Dispatching {task.get_summary()} at {self.clock.now()}ms")
        task.run()

    def _trigger_idle_handlers_if_needed(self, last_task: Optional[LoopTask]) -> None:
        """Run idle handlers if a user task just ran and no user task is due.

        Control tasks never count: neither as the task that ran nor as
        pending work. The handler list is copied under the queue lock and
        invoked with it released; handlers returning False are removed.
        """
        if last_task is None or last_task.is_control:
            return
        with self.queue.lock:
            if not self.queue.is_idle(self.clock.now(), ignore_control=True):
                return
            handlers = self.queue.idle_handlers.snapshot()

        for handler in handlers:
            if not handler():
                self.queue.idle_handlers.remove(handler)

    def _mark_paused(self) -> None:
        if self._state is not LoopState.QUIT:
            self._state = LoopState.PAUSED
            logger.info(f"Loop {self.name} paused")

    def _mark_unpaused(self) -> None:
        if self._state is not LoopState.QUIT:
            self._state = LoopState.UNPAUSED
            logger.info(f"Loop {self.name} unpaused")

    # ===== Checks =====

    def _quit(self, safe: bool) -> None:
        if self.is_main:
            raise UnsupportedOperationError("main loop is not allowed to quit")
        if self._state is LoopState.QUIT:
            return

        if self.is_paused():
            self.dispatcher.execute(UnpauseCommand(self))

        self._state = LoopState.QUIT
        dropped = self.queue.quit(self.clock.now(), safe=safe)
        logger.info(
            f"Loop {self.name} quit{' safely' if safe else ''}, dropped {dropped} tasks"
        )

    def _check_accepting(self) -> None:
        if self._state is LoopState.QUIT or self.queue.is_quitting:
            raise IllegalStateError(
                "Cannot post to a loop that has quit", loop_name=self.name
            )
        if not self.is_main and not self.owning_thread.is_alive():
            raise IllegalStateError(
                f"post to {self.name} failed. Is the loop thread dead?",
                loop_name=self.name,
            )

    def _check_controllable(self) -> None:
        if self.is_main and not self.is_on_owning_thread():
            raise UnsupportedOperationError(
                "main loop can only be controlled from main thread"
            )

    def _next_task_time(self) -> Optional[int]:
        head = self.queue.peek_next()
        return head.scheduled_time if head is not None else None

    def _unsupported_in_mode(self) -> Any:
        mode = self.config.looper_mode.value
        raise UnsupportedOperationError(
            f"this action is not supported in {mode.upper()} mode.", mode=mode
        )
