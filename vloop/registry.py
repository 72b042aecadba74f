"""Registry of live loops.

Loops are looked up explicitly by owning thread rather than through
thread-local state. The registry owns every loop it creates, which makes
test-boundary cleanup a plain iteration: reset_all() empties every queue,
teardown() quits background loops and resets the main loop.

A process-wide registry is available through initialize_registry(),
get_registry() and shutdown_registry().
"""

import logging
import threading
from typing import Optional

from vloop.clock import VirtualClock, get_clock
from vloop.config import LooperConfig, LooperMode, configure_logging, get_config
from vloop.exceptions import IllegalStateError
from vloop.loop import Loop, LoopState

logger = logging.getLogger(__name__)


class LoopRegistry:
    """Creates, tracks and tears down loops.

    Attributes:
        clock: Virtual clock shared by every loop in this registry.
        config: Process configuration handed to every loop.
    """

    def __init__(
        self,
        clock: Optional[VirtualClock] = None,
        config: Optional[LooperConfig] = None,
    ) -> None:
        """Initialize an empty registry.

        Args:
            clock: Shared clock (defaults to the process-wide clock).
            config: Configuration (defaults to get_config()).
        """
        self.clock = clock or get_clock()
        self.config = config or get_config()

        self._lock = threading.RLock()
        self._loops: dict[int, Loop] = {}
        self._main_loop: Optional[Loop] = None

    # ===== Creation =====

    def prepare_main_loop(self) -> Loop:
        """Create the main loop, owned by the calling thread.

        Returns:
            The main loop, PAUSED.

        Raises:
            IllegalStateError: If a main loop already exists or the thread
                already owns a loop.
        """
        with self._lock:
            if self._main_loop is not None:
                raise IllegalStateError("The main loop has already been prepared")
            loop = self._create(name="main", is_main=True)
            self._main_loop = loop

        logger.info(f"Prepared main loop on thread {loop.owning_thread.name}")
        return loop

    def prepare(self, name: Optional[str] = None) -> Loop:
        """Create a loop owned by the calling thread.

        The loop stays UNINITIALIZED until the thread calls ``loop.loop()``.

        Args:
            name: Loop name (defaults to the thread's name).

        Raises:
            IllegalStateError: If the calling thread already owns a loop.
        """
        name = name or threading.current_thread().name
        with self._lock:
            loop = self._create(name=name, is_main=False)

        logger.info(f"Prepared loop {loop.name}")
        return loop

    def start_loop_thread(self, name: str) -> Loop:
        """Start a daemon thread running a new loop.

        Returns once the loop is UNPAUSED and dispatching.

        Args:
            name: Name for both the thread and the loop.

        Raises:
            IllegalStateError: If the thread dies before its loop starts.
        """
        started = threading.Event()
        prepared: list[Loop] = []

        def run() -> None:
            loop = self.prepare(name)
            prepared.append(loop)
            loop.loop(started=started)

        thread = threading.Thread(target=run, name=name, daemon=True)
        thread.start()

        while not started.wait(self.config.command_wait_interval):
            if not thread.is_alive():
                raise IllegalStateError(
                    "Loop thread exited before starting", loop_name=name
                )

        return prepared[0]

    # ===== Lookup =====

    @property
    def main_loop(self) -> Loop:
        """The main loop.

        Raises:
            IllegalStateError: If prepare_main_loop() has not been called.
        """
        if self._main_loop is None:
            raise IllegalStateError("The main loop has not been prepared")
        return self._main_loop

    def has_main_loop(self) -> bool:
        return self._main_loop is not None

    def loop_for_thread(self, thread: threading.Thread) -> Optional[Loop]:
        with self._lock:
            return self._loops.get(thread.ident)

    def my_loop(self) -> Optional[Loop]:
        """The loop owned by the calling thread, if any."""
        return self.loop_for_thread(threading.current_thread())

    def loops(self) -> list[Loop]:
        """Snapshot of tracked loops, main loop first."""
        with self._lock:
            loops = list(self._loops.values())
        loops.sort(key=lambda loop: not loop.is_main)
        return loops

    # ===== Teardown =====

    def reset_all(self) -> int:
        """Discard pending tasks and idle handlers of every tracked loop.

        Does nothing unless the configured mode is PAUSED.

        Returns:
            Total number of tasks discarded.
        """
        if self.config.looper_mode is not LooperMode.PAUSED:
            logger.debug(
                f"reset_all() skipped in {self.config.looper_mode.value} mode"
            )
            return 0

        dropped = 0
        for loop in self.loops():
            dropped += loop.queue.reset()

        logger.info(f"Reset {len(self.loops())} loops, dropped {dropped} tasks")
        return dropped

    def teardown(self, join_timeout: float = 1.0) -> None:
        """Quit and join every background loop, then reset the main loop.

        The main loop is kept, not recreated.

        Args:
            join_timeout: Seconds to wait for each loop thread to exit.
        """
        background = [loop for loop in self.loops() if not loop.is_main]
        for loop in background:
            if loop.state is not LoopState.QUIT:
                loop.quit()
            if loop.owning_thread is not threading.current_thread():
                loop.owning_thread.join(timeout=join_timeout)
                if loop.owning_thread.is_alive():
                    logger.warning(f"Loop thread {loop.name} did not exit in time")
            # Loops prepared but never looped are released here
            loop.release()

        if self._main_loop is not None:
            self._main_loop.queue.reset()

        logger.info(f"Registry torn down, {len(background)} background loops quit")

    # ===== Internal =====

    def _create(self, name: str, is_main: bool) -> Loop:
        thread = threading.current_thread()
        existing = self._loops.get(thread.ident)
        if existing is not None and not existing.owning_thread.is_alive():
            # Thread idents are reused once a thread exits
            logger.debug(f"Dropping loop {existing.name} of a dead thread")
            existing.release()
            self._loops.pop(thread.ident, None)
        elif existing is not None:
            raise IllegalStateError(
                f"Only one loop may be created per thread ({thread.name})",
                loop_name=name,
            )
        loop = Loop(
            name=name,
            clock=self.clock,
            config=self.config,
            is_main=is_main,
            owning_thread=thread,
            on_exit=self._on_loop_exit,
        )
        self._loops[thread.ident] = loop
        return loop

    def _on_loop_exit(self, loop: Loop) -> None:
        with self._lock:
            if self._loops.get(loop.owning_thread.ident) is loop:
                del self._loops[loop.owning_thread.ident]


_registry: Optional[LoopRegistry] = None


def initialize_registry(
    clock: Optional[VirtualClock] = None,
    config: Optional[LooperConfig] = None,
) -> LoopRegistry:
    """Create the process-wide registry and prepare its main loop.

    Should be called once, on the main thread, at session start.

    Returns:
        The newly created registry.
    """
    global _registry

    _registry = LoopRegistry(clock=clock, config=config)
    configure_logging(_registry.config)
    _registry.prepare_main_loop()

    return _registry


def get_registry() -> LoopRegistry:
    """Get the process-wide registry.

    Raises:
        IllegalStateError: If initialize_registry() has not been called.
    """
    if _registry is None:
        raise IllegalStateError(
            "LoopRegistry not initialized. Call initialize_registry() first."
        )
    return _registry


def shutdown_registry() -> None:
    """Tear down the process-wide registry and forget it."""
    global _registry

    if _registry is not None:
        _registry.teardown()
        if _registry.has_main_loop():
            _registry.main_loop.release()

    _registry = None
