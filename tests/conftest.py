"""Pytest configuration and shared fixtures."""

import pytest

# Load environment variables from .env file at test startup
# so VLOOP_* settings are visible before fixtures build configs
from dotenv import load_dotenv
load_dotenv()

from vloop.config import reset_config

# Import all fixtures from core fixture modules
pytest_plugins = [
    "tests.fixtures.core.clocks",
    "tests.fixtures.core.tasks",
    "tests.fixtures.core.queues",
    "tests.fixtures.core.loops",
]


@pytest.fixture(autouse=True)
def fresh_config():
    """Drop the cached global config around every test."""
    reset_config()
    yield
    reset_config()
