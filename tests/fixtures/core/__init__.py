"""Core infrastructure fixtures."""

from tests.fixtures.core.clocks import (
    create_virtual_clock,
    EPOCH_CLOCK,
    DEFAULT_CLOCK,
)
from tests.fixtures.core.tasks import (
    create_loop_task,
    TaskRecorder,
)
from tests.fixtures.core.queues import (
    create_task_queue,
    order_of,
    drain_order,
)
from tests.fixtures.core.loops import (
    create_looper_config,
    create_loop_registry,
    dispose_registry,
    call_in_thread,
    wait_until,
    WAIT_TIMEOUT,
)

__all__ = [
    "create_virtual_clock",
    "EPOCH_CLOCK",
    "DEFAULT_CLOCK",
    "create_loop_task",
    "TaskRecorder",
    "create_task_queue",
    "order_of",
    "drain_order",
    "create_looper_config",
    "create_loop_registry",
    "dispose_registry",
    "call_in_thread",
    "wait_until",
    "WAIT_TIMEOUT",
]
