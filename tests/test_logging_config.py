"""Tests for logging setup."""

import logging

import pytest

from hubagent.logging_config import FlushingStreamHandler, get_logger, setup_process_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupProcessLogging:
    def test_console_only(self):
        root = setup_process_logging("agent")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0], FlushingStreamHandler)
        assert root.level == logging.INFO

    def test_rotating_files(self, tmp_path):
        log_dir = tmp_path / "logs"
        setup_process_logging("agent", level=logging.DEBUG, console=False, log_dir=log_dir)
        get_logger("hubagent.test").debug("hello from the test")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert "hello from the test" in (log_dir / "agent.log").read_text()
        assert "[agent] [DEBUG] hubagent.test" in (log_dir / "agent-current.log").read_text()

    def test_quiets_access_log(self):
        setup_process_logging("agent", level=logging.DEBUG)
        assert logging.getLogger("aiohttp.access").level == logging.WARNING
