"""Shared fixtures for the ssemux test suite."""

from collections.abc import Generator

import pytest
from loguru import logger


@pytest.fixture
def log_messages() -> Generator[list[str], None, None]:
    """Capture loguru messages (DEBUG and up) for the duration of a test."""
    messages: list[str] = []
    handler_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
