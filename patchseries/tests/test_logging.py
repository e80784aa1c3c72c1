"""Unit tests for logging configuration."""

import logging

import pytest

from patchseries.logging import get_logger, setup_logging


@pytest.fixture
def clean_logger():
    logger = logging.getLogger("patchseries")
    handlers = list(logger.handlers)
    level = logger.level
    propagate = logger.propagate
    # handlers left behind by CLI invocations in other tests
    logger.handlers = [h for h in handlers if not getattr(h, "_patchseries", False)]
    yield logger
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_creates_handler(self, clean_logger):
        initial = len(clean_logger.handlers)

        setup_logging()

        assert len(clean_logger.handlers) == initial + 1
        assert clean_logger.handlers[-1].formatter is not None

    def test_repeated_calls_do_not_stack_handlers(self, clean_logger):
        setup_logging()
        count = len(clean_logger.handlers)

        setup_logging(level=logging.DEBUG)

        assert len(clean_logger.handlers) == count
        assert clean_logger.level == logging.DEBUG

    def test_propagate_is_false(self, clean_logger):
        setup_logging()

        assert clean_logger.propagate is False


class TestGetLogger:
    def test_same_name_returns_same_logger(self):
        assert get_logger("patchseries.shared") is get_logger("patchseries.shared")
        assert get_logger("patchseries.shared").name == "patchseries.shared"
