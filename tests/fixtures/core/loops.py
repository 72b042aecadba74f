"""Fixtures for Loop, LoopRegistry and LooperConfig."""

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

import pytest

from vloop.clock import VirtualClock
from vloop.config import LooperConfig, LooperMode
from vloop.registry import LoopRegistry

# Upper bound for any single cross-thread wait in tests
WAIT_TIMEOUT = 5.0


def create_looper_config(
    looper_mode: LooperMode = LooperMode.PAUSED,
    command_wait_interval: float = 0.01,
    **kwargs,
) -> LooperConfig:
    """Create a LooperConfig tuned for tests.

    Args:
        looper_mode: Scheduling mode (default: PAUSED).
        command_wait_interval: Liveness check interval (default: 10ms).
        **kwargs: Additional fields to override.

    Returns:
        LooperConfig instance ready for testing.
    """
    return LooperConfig(
        looper_mode=looper_mode,
        command_wait_interval=command_wait_interval,
        **kwargs,
    )


def create_loop_registry(
    clock: VirtualClock,
    config: LooperConfig | None = None,
    prepare_main: bool = True,
) -> LoopRegistry:
    """Create a LoopRegistry, with its main loop owned by the calling thread.

    Args:
        clock: Shared clock.
        config: Configuration (defaults to create_looper_config()).
        prepare_main: Whether to prepare the main loop (default: True).

    Returns:
        LoopRegistry instance ready for testing.
    """
    registry = LoopRegistry(clock=clock, config=config or create_looper_config())
    if prepare_main:
        registry.prepare_main_loop()
    return registry


def dispose_registry(registry: LoopRegistry) -> None:
    """Tear down a registry created by create_loop_registry()."""
    registry.teardown()
    if registry.has_main_loop():
        registry.main_loop.release()


def call_in_thread(fn: Callable[[], Any], timeout: float = WAIT_TIMEOUT) -> Any:
    """Run ``fn`` on a separate thread and return its result.

    Exceptions raised by ``fn`` are re-raised here.

    Raises:
        concurrent.futures.TimeoutError: If ``fn`` does not finish in time.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="controller")
    try:
        return executor.submit(fn).result(timeout=timeout)
    finally:
        executor.shutdown(wait=False)


def wait_until(condition: Callable[[], bool], timeout: float = WAIT_TIMEOUT) -> bool:
    """Poll ``condition`` until it holds or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return condition()


@pytest.fixture
def looper_config():
    """Provide a PAUSED-mode config with a short wait interval."""
    return create_looper_config()


@pytest.fixture
def registry(clock, looper_config):
    """Provide a registry whose main loop belongs to the test thread."""
    registry = create_loop_registry(clock=clock, config=looper_config)
    yield registry
    dispose_registry(registry)


@pytest.fixture
def main_loop(registry):
    """Provide the main loop."""
    return registry.main_loop


@pytest.fixture
def background_loop(registry):
    """Provide a running, unpaused background loop named "worker"."""
    return registry.start_loop_thread("worker")
