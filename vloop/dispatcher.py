"""Synchronous cross-thread command execution.

A control command (idle, run one task, pause, unpause) must run on the
owning thread of the loop it targets. The CrossThreadDispatcher runs it
inline when already on that thread; otherwise it hands the command to the
loop's current executor and blocks the caller until the command signals
completion.

Two executors implement the CommandExecutor protocol:
- DirectExecutor: used while the loop is unpaused. Posts the command to
  the loop's own queue, where the owning thread's native loop picks it up.
- PausedExecutor: used while the loop is paused. It is itself a command
  running on the owning thread, blocking ordinary dispatch and draining a
  FIFO of incoming commands until it is released by an unpause.
"""

import logging
import queue
import threading
from typing import TYPE_CHECKING, Optional, Protocol

from vloop.exceptions import (
    IllegalStateError,
    InterruptedWaitError,
    UnsupportedOperationError,
)

if TYPE_CHECKING:
    from vloop.loop import Loop

logger = logging.getLogger(__name__)


class ControlCommand:
    """A unit of control work run on a loop's owning thread.

    Carries a one-shot completion signal. Exceptions raised by the work are
    captured so that a caller waiting on another thread can re-raise them;
    the owning thread itself keeps running.
    """

    def __init__(self) -> None:
        self._done = threading.Event()
        self._error: Optional[Exception] = None

    @property
    def is_complete(self) -> bool:
        return self._done.is_set()

    def perform(self) -> None:
        """The command's work. Subclasses override this."""
        raise NotImplementedError

    def run(self) -> None:
        """Run the work and release anyone waiting on it."""
        try:
            self.perform()
        except Exception as e:
            self._error = e
        finally:
            self._done.set()

    def wait_till_complete(
        self, owner: Optional[threading.Thread] = None, interval: float = 0.05
    ) -> None:
        """Block until the command has run.

        If the owning thread dies before the command completes the wait is
        abandoned with a warning; the caller resumes without a result.

        Args:
            owner: Thread expected to run the command.
            interval: Seconds between checks that ``owner`` is still alive.
        """
        try:
            self._await(owner, interval)
        except InterruptedWaitError as e:
            logger.warning(f"Wait till complete interrupted: {e}")

    def raise_if_failed(self) -> None:
        """Re-raise the exception captured while running, if any."""
        if self._error is not None:
            raise self._error

    def _await(self, owner: Optional[threading.Thread], interval: float) -> None:
        while not self._done.wait(interval):
            if owner is not None and not owner.is_alive():
                raise InterruptedWaitError(
                    f"{type(self).__name__} abandoned: thread {owner.name} is dead"
                )


class CommandExecutor(Protocol):
    """Anything that can accept a command for the owning thread."""

    def execute(self, command: ControlCommand) -> None: ...


class DirectExecutor:
    """Hands commands to the loop's native queue.

    Behaves exactly like posting a task to the loop: the command runs when
    the owning thread's native loop reaches it.
    """

    def __init__(self, loop: "Loop") -> None:
        self._loop = loop

    def execute(self, command: ControlCommand) -> None:
        """Post the command as a control task.

        Raises:
            IllegalStateError: If the owning thread is dead or the loop is quitting.
        """
        owner = self._loop.owning_thread
        if not owner.is_alive():
            logger.warning(f"Dropping {type(command).__name__}: thread {owner.name} is dead")
            raise IllegalStateError(
                f"post to {self._loop.name} failed. Is the loop thread dead?",
                loop_name=self._loop.name,
            )
        try:
            self._loop.queue.schedule(
                command.run, self._loop.clock.now(), is_control=True
            )
        except IllegalStateError as e:
            raise IllegalStateError(
                f"post to {self._loop.name} failed: {e.message}",
                loop_name=self._loop.name,
            ) from e


class PausedExecutor(ControlCommand):
    """Blocks normal dispatch on the owning thread, i.e. pauses the loop.

    While running it is the loop's executor: commands submitted from other
    threads land in its FIFO and run here, one at a time, in order.
    """

    def __init__(self, loop: "Loop") -> None:
        super().__init__()
        self._loop = loop
        self._commands: "queue.Queue[ControlCommand]" = queue.Queue()

    def execute(self, command: ControlCommand) -> None:
        self._commands.put(command)

    def run(self) -> None:
        dispatcher = self._loop.dispatcher
        dispatcher.install(self)
        self._loop._mark_paused()
        self._done.set()

        while dispatcher.executor is self:
            command = self._commands.get()
            command.run()

        # Commands handed over before the unpause took effect still run here
        for command in dispatcher.close(self):
            command.run()

    def drain_pending(self) -> list[ControlCommand]:
        """Remove and return every command still waiting in the FIFO."""
        pending = []
        while True:
            try:
                pending.append(self._commands.get_nowait())
            except queue.Empty:
                return pending


class UnpauseCommand(ControlCommand):
    """Swaps the paused executor back for the direct one."""

    def __init__(self, loop: "Loop") -> None:
        super().__init__()
        self._loop = loop

    def perform(self) -> None:
        self._loop.dispatcher.install(DirectExecutor(self._loop))
        self._loop._mark_unpaused()


class CrossThreadDispatcher:
    """Runs control commands on a loop's owning thread and waits for them.

    Attributes:
        executor: The strategy currently used for hand-offs.
    """

    def __init__(self, loop: "Loop") -> None:
        self._loop = loop
        self._lock = threading.Lock()
        self._executor: CommandExecutor = DirectExecutor(loop)

    @property
    def executor(self) -> CommandExecutor:
        return self._executor

    def install(self, executor: CommandExecutor) -> None:
        """Make ``executor`` the hand-off strategy. Owning thread only."""
        with self._lock:
            self._executor = executor

    def close(self, paused: PausedExecutor) -> list[ControlCommand]:
        """Retire a paused executor and collect commands it never took.

        Runs under the hand-off lock, so nothing can be queued to ``paused``
        once this returns.
        """
        with self._lock:
            return paused.drain_pending()

    def execute(self, command: ControlCommand) -> None:
        """Run ``command`` on the owning thread, synchronously.

        On the owning thread the command runs inline, except an unpause,
        which is queued to the current executor so a paused drain observes
        it. From any other thread the command is handed off and the caller
        blocks until it completes.

        Raises:
            UnsupportedOperationError: If the loop is the main loop and the
                caller is not its owning thread.
            IllegalStateError: If the owning thread can no longer accept work.
            Exception: Whatever the command itself raised.
        """
        loop = self._loop

        if loop.is_on_owning_thread():
            if isinstance(command, UnpauseCommand):
                with self._lock:
                    self._executor.execute(command)
                return
            command.run()
            command.raise_if_failed()
            return

        if loop.is_main:
            raise UnsupportedOperationError(
                "main loop can only be controlled from main thread"
            )

        with self._lock:
            self._executor.execute(command)
        command.wait_till_complete(
            loop.owning_thread, loop.config.command_wait_interval
        )
        command.raise_if_failed()
