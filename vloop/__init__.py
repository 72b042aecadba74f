"""vloop: deterministic, controllable event loops driven by virtual time.

This package lets test code pause loops, advance a shared virtual clock and
run queued work one task or one time slice at a time, while each loop's
owner sees an ordinary continuously running loop.
"""

from vloop.clock import VirtualClock, get_clock, reset_clock
from vloop.config import (
    LooperConfig,
    LooperMode,
    configure_logging,
    get_config,
    load_config,
    reset_config,
)
from vloop.dispatcher import ControlCommand, CrossThreadDispatcher
from vloop.exceptions import (
    IllegalStateError,
    InterruptedWaitError,
    LooperError,
    UnsupportedOperationError,
)
from vloop.loop import Loop, LoopState
from vloop.queue import IdleHandlerRegistry, TaskQueue
from vloop.registry import (
    LoopRegistry,
    get_registry,
    initialize_registry,
    shutdown_registry,
)
from vloop.task import LoopTask

__all__ = [
    "VirtualClock",
    "get_clock",
    "reset_clock",
    "LooperConfig",
    "LooperMode",
    "get_config",
    "load_config",
    "reset_config",
    "configure_logging",
    "ControlCommand",
    "CrossThreadDispatcher",
    "LooperError",
    "UnsupportedOperationError",
    "IllegalStateError",
    "InterruptedWaitError",
    "Loop",
    "LoopState",
    "TaskQueue",
    "IdleHandlerRegistry",
    "LoopTask",
    "LoopRegistry",
    "initialize_registry",
    "get_registry",
    "shutdown_registry",
]
