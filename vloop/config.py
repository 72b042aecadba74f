"""Runtime configuration for vloop.

Values come from environment variables, optionally seeded from a ``.env``
file in the working directory:

    VLOOP_MODE                        paused | legacy (default: paused)
    VLOOP_INITIAL_TIME_MS             starting virtual clock value (default: 100)
    VLOOP_COMMAND_WAIT_INTERVAL       seconds between liveness checks while
                                      waiting on a control command (default: 0.05)
    VLOOP_IGNORE_UNCAUGHT_EXCEPTIONS  keep background loops alive after a task
                                      raises (default: false)
    VLOOP_LOG_LEVEL                   level applied to the ``vloop`` logger
"""

import logging
import os
from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


class LooperMode(str, Enum):
    """Scheduling mode the process is running under."""

    PAUSED = "paused"
    LEGACY = "legacy"


class LooperConfig(BaseModel):
    """Settings shared by every loop in the process.

    Args:
        looper_mode: Which scheduling mode is active.
        initial_time_ms: Virtual clock value at process start and after reset.
        command_wait_interval: Seconds a waiting caller sleeps between checks
            that the loop's owning thread is still alive.
        ignore_uncaught_exceptions: Whether a background loop logs and keeps
            dispatching after a task raises, instead of terminating.
        log_level: Optional level name for the ``vloop`` package logger.
    """

    looper_mode: LooperMode = Field(
        default=LooperMode.PAUSED, description="Active scheduling mode"
    )
    initial_time_ms: int = Field(
        default=100, ge=0, description="Virtual clock value at start (ms)"
    )
    command_wait_interval: float = Field(
        default=0.05,
        gt=0.0,
        description="Seconds between owning-thread liveness checks",
    )
    ignore_uncaught_exceptions: bool = Field(
        default=False,
        description="Keep background loops dispatching after a task raises",
    )
    log_level: Optional[str] = Field(
        default=None, description="Level name for the vloop logger"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: Optional[str]) -> Optional[str]:
        """Ensure the log level is a name the logging module knows."""
        if v is None:
            return v
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {v}")
        return level


_config: Optional[LooperConfig] = None


def load_config() -> LooperConfig:
    """Build a LooperConfig from the environment.

    Loads ``.env`` first without overriding variables that are already set.

    Returns:
        A freshly validated LooperConfig.

    Raises:
        pydantic.ValidationError: If a variable holds an invalid value.
    """
    load_dotenv(override=False)

    data: dict[str, object] = {}
    if "VLOOP_MODE" in os.environ:
        data["looper_mode"] = os.environ["VLOOP_MODE"].lower()
    if "VLOOP_INITIAL_TIME_MS" in os.environ:
        data["initial_time_ms"] = os.environ["VLOOP_INITIAL_TIME_MS"]
    if "VLOOP_COMMAND_WAIT_INTERVAL" in os.environ:
        data["command_wait_interval"] = os.environ["VLOOP_COMMAND_WAIT_INTERVAL"]
    if "VLOOP_IGNORE_UNCAUGHT_EXCEPTIONS" in os.environ:
        data["ignore_uncaught_exceptions"] = os.environ[
            "VLOOP_IGNORE_UNCAUGHT_EXCEPTIONS"
        ]
    if "VLOOP_LOG_LEVEL" in os.environ:
        data["log_level"] = os.environ["VLOOP_LOG_LEVEL"]

    return LooperConfig(**data)


def get_config() -> LooperConfig:
    """Get the process-wide config, loading it on first use."""
    global _config

    if _config is None:
        _config = load_config()

    return _config


def reset_config() -> None:
    """Forget the cached config so the next get_config() reloads it."""
    global _config
    _config = None


def configure_logging(config: Optional[LooperConfig] = None) -> None:
    """Apply the configured log level to the ``vloop`` package logger.

    Args:
        config: Config to read (defaults to get_config()).
    """
    config = config or get_config()
    if config.log_level is not None:
        logging.getLogger("vloop").setLevel(config.log_level)
