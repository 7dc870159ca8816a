import logging

import pytest

from stl_falsifier.logging_config import setup_logging


@pytest.fixture(autouse=True)
def restore_package_logger():
    yield
    setup_logging(logging.WARNING)
    logging.getLogger("stl_falsifier.executor").setLevel(logging.NOTSET)


def test_level_names_and_file(tmp_path):
    log_file = tmp_path / "run.log"
    logger = setup_logging("debug", str(log_file), module_levels={"executor": "ERROR"})
    assert logger.name == "stl_falsifier"
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 2
    assert logging.getLogger("stl_falsifier.executor").level == logging.ERROR

    logging.getLogger("stl_falsifier.session").info("memo refreshed")
    for handler in logger.handlers:
        handler.flush()
    assert "memo refreshed" in log_file.read_text()


def test_second_call_replaces_handlers():
    setup_logging(logging.INFO)
    logger = setup_logging(logging.INFO)
    assert len(logger.handlers) == 1


def test_unknown_level():
    with pytest.raises(ValueError):
        setup_logging("chatty")
