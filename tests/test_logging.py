import logging

import pytest

from servicekit.core.logging import HANDLER_NAME, setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_repeated_setup_keeps_one_handler(root_logger):
    setup_logging("DEBUG", "billing")
    handler = setup_logging("INFO", "billing")

    ours = [h for h in root_logger.handlers if h.get_name() == HANDLER_NAME]
    assert ours == [handler]
    assert root_logger.level == logging.INFO


def test_foreign_handlers_are_kept(root_logger):
    foreign = logging.NullHandler()
    root_logger.addHandler(foreign)
    setup_logging()
    assert foreign in root_logger.handlers


def test_label_and_levels(root_logger):
    handler = setup_logging("debug", "billing-eu")
    record = logging.LogRecord("servicekit.x", logging.INFO, __file__, 1, "hello", None, None)

    assert "[billing-eu]" in handler.format(record)
    assert logging.getLogger("uvicorn.access").level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING
