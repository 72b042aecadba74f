"""Threaded tests for background loops.

A background loop runs its native dispatch loop on its own thread. These
tests drive it from the test thread and from helper threads, covering
automatic dispatch, pause/unpause, control while paused, quitting and task
failures. Every wait is bounded by WAIT_TIMEOUT.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from vloop.exceptions import IllegalStateError
from vloop.loop import LoopState
from tests.fixtures.core.loops import (
    WAIT_TIMEOUT,
    call_in_thread,
    create_loop_registry,
    create_looper_config,
    dispose_registry,
    wait_until,
)
from tests.fixtures.core.queues import order_of


def pending_labels(recorder, expected):
    """Short real-time pause, then whatever the recorder has seen."""
    time.sleep(0.05)
    return [c for c in recorder.calls if c in expected]


class TestBackgroundLoopStartup:
    """Test a freshly started loop thread."""

    def test_started_unpaused(self, background_loop, registry):
        """Test that start_loop_thread returns a running loop."""
        assert background_loop.state is LoopState.UNPAUSED
        assert background_loop.is_main is False
        assert background_loop.owning_thread.name == "worker"
        assert background_loop.owning_thread.daemon is True
        assert registry.loop_for_thread(background_loop.owning_thread) is background_loop

    def test_idle_when_waiting(self, background_loop):
        """Test that an empty running loop reports idle from outside."""
        assert wait_until(background_loop.is_idle)


class TestAutomaticDispatch:
    """Test that unpaused loops run work on their own."""

    def test_due_task_runs_on_owning_thread(self, background_loop, recorder):
        """Test that a task posted from the test thread runs on the loop thread."""
        background_loop.post(recorder.task("a"))

        assert recorder.ran.wait(WAIT_TIMEOUT)
        assert recorder.calls == ["a"]
        assert recorder.threads == ["worker"]

    def test_delayed_task_waits_for_clock(self, background_loop, recorder, clock):
        """Test that a delayed task runs only once virtual time reaches it."""
        background_loop.post(recorder.task("later"), delay=50)

        assert pending_labels(recorder, ["later"]) == []

        clock.advance_by(50)

        assert recorder.ran.wait(WAIT_TIMEOUT)
        assert recorder.threads == ["worker"]

    def test_idle_for_on_unpaused_loop(self, background_loop, recorder, clock):
        """Test that idle_for() returns only after due work has run."""
        background_loop.post(recorder.task("A"), delay=100)
        background_loop.post(recorder.task("B"), delay=50)

        background_loop.idle_for(75)

        assert recorder.calls == ["B"]
        assert clock.now() == 175

    def test_busy_loop_is_not_idle(self, background_loop):
        """Test that a loop in the middle of a task is not idle from outside."""
        started = threading.Event()
        release = threading.Event()

        def blocking():
            started.set()
            release.wait(WAIT_TIMEOUT)

        background_loop.post(blocking)
        assert started.wait(WAIT_TIMEOUT)

        assert background_loop.is_idle() is False

        release.set()
        assert wait_until(background_loop.is_idle)

    def test_loops_are_independent(self, registry, recorder):
        """Test that two loops each run their own tasks on their own thread."""
        first = registry.start_loop_thread("first")
        second = registry.start_loop_thread("second")

        first.post(recorder.task("one"))
        second.post(recorder.task("two"))

        assert wait_until(lambda: len(recorder.calls) == 2)
        assert sorted(zip(recorder.calls, recorder.threads)) == [
            ("one", "first"),
            ("two", "second"),
        ]


class TestPauseUnpause:
    """Test pausing a background loop from other threads."""

    def test_paused_loop_holds_tasks_until_unpaused(self, background_loop, recorder):
        """Test pausing, posting and unpausing, all from one controlling thread."""
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="t2") as t2:
            t2.submit(background_loop.pause).result(WAIT_TIMEOUT)
            t2.submit(background_loop.post, recorder.task("held")).result(WAIT_TIMEOUT)

            assert background_loop.is_paused()
            assert pending_labels(recorder, ["held"]) == []
            assert background_loop.queue.pending_count == 1

            t2.submit(background_loop.unpause).result(WAIT_TIMEOUT)

        assert recorder.ran.wait(WAIT_TIMEOUT)
        assert recorder.threads == ["worker"]
        assert background_loop.state is LoopState.UNPAUSED

    def test_pause_unpause_keeps_queue(self, background_loop):
        """Test that a pause/unpause cycle leaves pending tasks untouched."""
        for delay in [30, 10, 20, 10]:
            background_loop.post(lambda: None, delay=delay)
        before = order_of(background_loop.queue)

        background_loop.pause()
        background_loop.unpause()

        assert order_of(background_loop.queue) == before

    def test_pause_is_idempotent(self, background_loop):
        """Test that pausing twice does nothing the second time."""
        background_loop.pause()
        executor = background_loop.dispatcher.executor

        background_loop.pause()

        assert background_loop.dispatcher.executor is executor

    def test_concurrent_pauses(self, background_loop):
        """Test that simultaneous pause calls install a single paused executor."""
        threads = [threading.Thread(target=background_loop.pause) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(WAIT_TIMEOUT)

        assert background_loop.is_paused()
        assert background_loop.queue.pending_count == 0

        background_loop.unpause()

        assert background_loop.state is LoopState.UNPAUSED

    def test_unpause_when_running_is_noop(self, background_loop):
        """Test that unpausing a running loop does nothing."""
        background_loop.unpause()

        assert background_loop.state is LoopState.UNPAUSED

    def test_set_paused(self, background_loop):
        """Test toggling with set_paused()."""
        assert background_loop.set_paused(True) is True
        assert background_loop.is_paused()

        assert background_loop.set_paused(False) is True
        assert not background_loop.is_paused()


class TestControlWhilePaused:
    """Test driving a paused background loop from outside."""

    def test_idle_runs_on_owning_thread(self, background_loop, recorder):
        """Test that idle() from the test thread drains on the loop thread."""
        background_loop.pause()
        background_loop.post(recorder.task("a"))

        background_loop.idle()

        assert recorder.calls == ["a"]
        assert recorder.threads == ["worker"]
        assert background_loop.is_paused()

    def test_idle_for(self, background_loop, recorder, clock):
        """Test virtual time control on a paused background loop."""
        background_loop.pause()
        background_loop.post(recorder.task("A"), delay=100)
        background_loop.post(recorder.task("B"), delay=50)

        background_loop.idle_for(75)

        assert recorder.calls == ["B"]
        assert clock.now() == 175

    def test_run_one_task(self, background_loop, recorder, clock):
        """Test single-stepping a paused background loop."""
        background_loop.pause()
        background_loop.post(recorder.task("a"), delay=40)
        background_loop.post(recorder.task("b"), delay=80)

        background_loop.run_one_task()

        assert recorder.calls == ["a"]
        assert clock.now() == 140

    def test_task_error_reaches_caller(self, background_loop):
        """Test that a failing task re-raises on the controlling thread."""
        background_loop.pause()
        background_loop.post(lambda: 1 / 0)

        with pytest.raises(ZeroDivisionError):
            background_loop.idle()

        assert background_loop.is_paused()
        assert background_loop.owning_thread.is_alive()

    def test_paused_loop_is_idle(self, background_loop):
        """Test is_idle() on a paused loop with only future work."""
        background_loop.pause()
        background_loop.post(lambda: None, delay=10)

        assert background_loop.is_idle() is True

    def test_run_paused_on_owning_thread(self, background_loop):
        """Test run_paused() from a task drained on the paused loop."""
        background_loop.pause()
        results = []
        background_loop.post(
            lambda: results.append(background_loop.run_paused(lambda: "direct"))
        )

        background_loop.idle()

        assert results == ["direct"]


class TestPauseFromOwningThread:
    """Test pause and unpause issued by tasks on the loop's own thread."""

    def test_task_pauses_its_own_loop(self, background_loop, recorder):
        """Test that a task may pause the loop, blocking until unpaused elsewhere."""
        background_loop.post(background_loop.pause)
        assert wait_until(background_loop.is_paused)

        background_loop.post(recorder.task("after"))
        assert pending_labels(recorder, ["after"]) == []

        background_loop.unpause()

        assert recorder.ran.wait(WAIT_TIMEOUT)
        assert recorder.threads == ["worker"]

    def test_task_unpauses_its_own_loop(self, background_loop):
        """Test that an unpause from a drained task takes effect after it."""
        background_loop.pause()
        background_loop.post(background_loop.unpause)

        background_loop.idle()

        assert wait_until(lambda: background_loop.state is LoopState.UNPAUSED)


class TestQuit:
    """Test quitting background loops."""

    def test_quit_while_paused(self, background_loop, registry):
        """Test that quit forces an unpause and ends the loop thread."""
        background_loop.pause()
        background_loop.post(lambda: None, delay=10)

        call_in_thread(background_loop.quit)
        background_loop.owning_thread.join(WAIT_TIMEOUT)

        assert not background_loop.owning_thread.is_alive()
        assert background_loop.state is LoopState.QUIT
        assert background_loop.queue.pending_count == 0
        assert registry.loop_for_thread(background_loop.owning_thread) is None

    def test_quit_safely_runs_due_tasks(self, background_loop, recorder):
        """Test that a safe quit keeps due work and drops future work."""
        background_loop.pause()
        background_loop.post(recorder.task("due"))
        background_loop.post(recorder.task("future"), delay=10)

        background_loop.quit_safely()
        background_loop.owning_thread.join(WAIT_TIMEOUT)

        assert recorder.calls == ["due"]
        assert background_loop.state is LoopState.QUIT

    def test_post_after_quit_fails(self, background_loop):
        """Test that a quit loop rejects new work."""
        background_loop.quit()
        background_loop.owning_thread.join(WAIT_TIMEOUT)

        with pytest.raises(IllegalStateError):
            background_loop.post(lambda: None)

    def test_control_after_thread_exit_fails(self, background_loop):
        """Test that control commands cannot reach a dead loop thread."""
        background_loop.quit()
        background_loop.owning_thread.join(WAIT_TIMEOUT)

        with pytest.raises(IllegalStateError, match="Is the loop thread dead"):
            background_loop.idle()

    def test_quit_from_paused_drain(self, background_loop):
        """Test a task quitting its own paused loop."""
        background_loop.pause()
        background_loop.post(background_loop.quit)

        background_loop.idle()
        background_loop.owning_thread.join(WAIT_TIMEOUT)

        assert not background_loop.owning_thread.is_alive()
        assert background_loop.state is LoopState.QUIT


class TestUncaughtExceptions:
    """Test task failures during native dispatch."""

    def test_failure_terminates_loop(self, background_loop, registry, caplog, monkeypatch):
        """Test that an uncaught exception ends the loop and unregisters it."""
        escaped = []
        monkeypatch.setattr(threading, "excepthook", lambda args: escaped.append(args.exc_type))

        def boom():
            raise RuntimeError("task failed")

        background_loop.post(boom)
        background_loop.owning_thread.join(WAIT_TIMEOUT)

        assert not background_loop.owning_thread.is_alive()
        assert escaped == [RuntimeError]
        assert background_loop.state is LoopState.QUIT
        assert registry.loop_for_thread(background_loop.owning_thread) is None
        assert "terminated by uncaught exception" in caplog.text
        with pytest.raises(IllegalStateError):
            background_loop.post(lambda: None)

    def test_ignored_failure_keeps_loop_running(self, clock, recorder):
        """Test that ignore_uncaught_exceptions logs and keeps dispatching."""
        registry = create_loop_registry(
            clock, create_looper_config(ignore_uncaught_exceptions=True)
        )
        try:
            loop = registry.start_loop_thread("resilient")

            loop.post(lambda: 1 / 0)
            loop.post(recorder.task("after"))

            assert recorder.ran.wait(WAIT_TIMEOUT)
            assert loop.state is LoopState.UNPAUSED
            assert loop.owning_thread.is_alive()
        finally:
            dispose_registry(registry)


class TestIdleHandlersOnBackgroundLoop:
    """Test that control commands never drive the idle handler protocol."""

    @pytest.fixture
    def idle_calls(self, background_loop):
        calls = []

        def handler():
            calls.append(threading.current_thread().name)
            return True

        background_loop.add_idle_handler(handler)
        return calls

    def test_idling_empty_queue_fires_nothing(self, background_loop, idle_calls):
        """Test that an idle() command on an empty running loop fires no handler."""
        background_loop.idle()
        background_loop.run_one_task()

        assert idle_calls == []

    def test_one_task_fires_once_when_unpaused(self, background_loop, idle_calls, clock):
        """Test a single idle transition on a running loop driven by idle_for()."""
        background_loop.post(lambda: None, delay=50)

        background_loop.idle_for(100)

        assert idle_calls == ["worker"]
        assert clock.now() == 200

    def test_one_task_fires_once_when_paused(self, background_loop, idle_calls):
        """Test a single idle transition drained through the paused executor."""
        background_loop.pause()
        background_loop.post(lambda: None)

        background_loop.idle()

        assert idle_calls == ["worker"]

    def test_pause_unpause_fires_nothing(self, background_loop, idle_calls):
        """Test that pausing and unpausing alone fire no handler."""
        background_loop.pause()
        background_loop.unpause()
        background_loop.idle()

        assert idle_calls == []
