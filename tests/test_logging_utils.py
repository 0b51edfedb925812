import logging

import pytest

from sckana.logging_utils import init_logging, parse_level


def _get_handler_types():
    """Helper: return a list of handler class types currently installed."""
    return tuple(type(h) for h in logging.root.handlers)


@pytest.fixture
def reset_logging():
    """Ensure clean logging handlers before/after each test."""
    orig = logging.root.handlers[:]
    level = logging.root.level
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
    yield
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)
        h.close()
    for h in orig:
        logging.root.addHandler(h)
    logging.root.setLevel(level)


def test_init_logging_stream_only(reset_logging):
    init_logging(logfile=None, level=logging.DEBUG)
    assert _get_handler_types() == (logging.StreamHandler,)
    assert logging.root.level == logging.DEBUG


def test_init_logging_stream_and_file(tmp_path, reset_logging):
    log_path = tmp_path / "log" / "analysis.log"
    init_logging(logfile=log_path, level=logging.INFO)

    # Order: StreamHandler then FileHandler
    assert _get_handler_types() == (logging.StreamHandler, logging.FileHandler)

    logging.getLogger("sckana.inputs").info("Bound 2 datasets")
    txt = log_path.read_text()
    assert "[INFO] sckana.inputs: Bound 2 datasets" in txt


def test_init_logging_overwrites_previous_handlers(reset_logging):
    logging.root.addHandler(logging.StreamHandler())
    init_logging(None)
    assert _get_handler_types() == (logging.StreamHandler,)


def test_init_logging_accepts_level_names(tmp_path, reset_logging):
    log_path = tmp_path / "test.log"
    init_logging(logfile=log_path, level="warning")

    logger = logging.getLogger("x")
    logger.info("info msg")
    logger.warning("warn msg")

    txt = log_path.read_text()
    assert "warn msg" in txt
    assert "info msg" not in txt


def test_parse_level():
    assert parse_level("debug") == logging.DEBUG
    assert parse_level(logging.ERROR) == logging.ERROR
    with pytest.raises(ValueError):
        parse_level("chatty")
