import datetime
import logging
import os

import pytest

from uapoller._UALogger_ import archive_previous_log, log_level, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


@pytest.mark.parametrize("verbosity,expected", [
    (0, logging.DEBUG),
    (1, logging.INFO),
    (2, logging.WARNING),
    (3, logging.ERROR),
    (4, logging.CRITICAL),
    (9, logging.INFO),
    (-1, logging.INFO),
])
def test_log_level(verbosity, expected):
    assert log_level(verbosity) == expected


def test_archive_previous_log(tmp_path):
    """Archived names carry the old log's modification time; clashes get a counter."""
    log_file = tmp_path / "uapoller.log"
    assert archive_previous_log(str(log_file)) is None

    written = datetime.datetime(2024, 3, 1, 6, 30, 0).timestamp()
    log_file.write_text("first run")
    os.utime(log_file, (written, written))
    first = archive_previous_log(str(log_file))
    log_file.write_text("second run")
    os.utime(log_file, (written, written))
    second = archive_previous_log(str(log_file))

    assert not log_file.exists()
    assert first == str(tmp_path / "uapoller.20240301-063000.log")
    assert second == str(tmp_path / "uapoller.20240301-063000.1.log")
    with open(first) as f:
        assert f.read() == "first run"


def test_setup_logging_to_file(tmp_path):
    log_file = tmp_path / "logs" / "uapoller.log"
    assert setup_logging(str(log_file), level=2) is None
    logging.warning("tank level high")
    logging.info("not written")
    for handler in logging.getLogger().handlers:
        handler.flush()

    text = log_file.read_text()
    assert "WARNING - tank level high" in text
    assert "not written" not in text
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("asyncua").level == logging.WARNING


def test_setup_logging_archives_existing_file(tmp_path):
    log_file = tmp_path / "uapoller.log"
    log_file.write_text("earlier run")
    archived = setup_logging(str(log_file), level=1)
    for handler in logging.getLogger().handlers:
        handler.flush()

    with open(archived) as f:
        assert f.read() == "earlier run"
    assert f"Previous log moved to {archived}" in log_file.read_text()
