import logging

import pytest
from pythonjsonlogger import jsonlogger

from storefront.core.logging_config import configure_logging


@pytest.fixture
def clean_logger():
    logger = logging.getLogger("storefront")
    saved = (list(logger.handlers), logger.level)
    logger.handlers.clear()
    yield logger
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])


def test_json_handler_installed_once(clean_logger):
    configure_logging(level="debug", json=True)
    configure_logging(level="info", json=False)

    assert len(clean_logger.handlers) == 1
    assert isinstance(clean_logger.handlers[0].formatter, jsonlogger.JsonFormatter)
    assert clean_logger.level == logging.DEBUG


def test_plain_formatter_when_json_disabled(clean_logger):
    configure_logging(json=False)

    formatter = clean_logger.handlers[0].formatter
    assert not isinstance(formatter, jsonlogger.JsonFormatter)
