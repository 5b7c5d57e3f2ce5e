"""Shared fixtures."""

import sys

import pytest
from loguru import logger

from story_graph.config import get_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    """Settings are cached per process; start every test from a clean cache."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def reset_logging():
    """The CLI reconfigures loguru; put the default sink back afterwards."""
    yield
    logger.remove()
    logger.add(sys.stderr, level="WARNING")


@pytest.fixture
def log_records():
    """Collect loguru records at WARNING and above."""
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="WARNING")
    yield records
    logger.remove(sink_id)
