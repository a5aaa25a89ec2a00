"""Tests for structlog configuration."""

import logging

import pytest
import structlog

from jobqueue.core.logging import configure_logging


@pytest.fixture(autouse=True)
def _restore_structlog():
    yield
    structlog.reset_defaults()
    logging.getLogger().setLevel(logging.WARNING)


@pytest.mark.parametrize("fmt", ["json", "console"])
def test_configure_logging(fmt):
    configure_logging("DEBUG", fmt)
    assert structlog.is_configured()
    structlog.get_logger("jobqueue.test").info("job_pushed", job_id=1)


def test_level_applied():
    configure_logging("ERROR")
    assert logging.getLogger().level == logging.ERROR


def test_unknown_level_falls_back_to_info():
    configure_logging("LOUD")
    assert logging.getLogger().level == logging.INFO
