"""Tests for logging configuration."""

import logging

from canvas_studio.app_logging import configure_logging


def test_configure_logging_idempotent() -> None:
    logger = logging.getLogger("canvas_studio")
    logger.handlers.clear()

    configure_logging()
    first_count = len(logger.handlers)

    configure_logging()
    second_count = len(logger.handlers)

    assert first_count == 1
    assert second_count == 1


def test_configure_logging_sets_level_and_quiets_clients() -> None:
    configure_logging("debug")

    assert logging.getLogger("canvas_studio").level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING

    configure_logging()
    assert logging.getLogger("canvas_studio").level == logging.INFO
