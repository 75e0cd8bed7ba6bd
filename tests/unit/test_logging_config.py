from __future__ import annotations

import logging
import logging.handlers

import pytest


@pytest.fixture
def logging_module():
    from devsupervisor import logging_config

    root = logging.getLogger()
    previous_level = root.level
    for handler in list(root.handlers):
        root.removeHandler(handler)

    yield logging_config

    # Cleanup handlers added during the test
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    root.setLevel(previous_level)


def test_console_only_without_log_dir(logging_module):
    logging_module.setup_logging("devsupervisor")

    root = logging.getLogger()
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0], logging.StreamHandler)
    assert root.handlers[0].level == logging.INFO
    assert root.level == logging.INFO
    assert logging.getLogger("asyncio").level == logging.WARNING


def test_file_handler_written_to_log_dir(logging_module, tmp_path):
    log_dir = tmp_path / "logs"
    logging_module.setup_logging("devsupervisor", log_dir=log_dir)

    file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
    assert len(file_handlers) == 1
    assert file_handlers[0].baseFilename == str(log_dir / "devsupervisor.log")
    assert file_handlers[0].mode == "w"
    assert logging.getLogger().level == logging.DEBUG

    logging.getLogger("devsupervisor.test").debug("written to file only")
    file_handlers[0].flush()
    assert "written to file only" in (log_dir / "devsupervisor.log").read_text()


def test_log_append_keeps_previous_file(logging_module, monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_APPEND", "1")
    logging_module.setup_logging("devsupervisor", log_dir=tmp_path)

    file_handler = next(h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler))
    assert file_handler.mode == "a"


def test_verbose_from_environment(logging_module, monkeypatch):
    monkeypatch.setenv("DEV_VERBOSE", "true")
    logging_module.setup_logging()

    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert root.handlers[0].level == logging.DEBUG


def test_repeated_setup_replaces_handlers(logging_module, tmp_path):
    logging_module.setup_logging("devsupervisor", log_dir=tmp_path)
    logging_module.setup_logging("devsupervisor", log_dir=tmp_path)

    assert len(logging.getLogger().handlers) == 2
