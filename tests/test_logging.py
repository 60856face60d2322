"""Test logging configuration."""

import logging
from pathlib import Path

import structlog
from structlog.testing import LogCapture

from wssmux.logging import get_logger, setup_logging


class TestLogging:
    """Test logging functionality."""

    def setup_method(self) -> None:
        """Setup before each test - reset logging configuration."""
        structlog.reset_defaults()
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)

    def teardown_method(self) -> None:
        structlog.reset_defaults()
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            handler.close()
            root_logger.removeHandler(handler)

    def test_setup_logging_default(self) -> None:
        setup_logging()
        logger = get_logger("test")
        assert logger is not None
        assert hasattr(logger, "info")
        assert hasattr(logger, "error")

    def test_setup_logging_with_level(self) -> None:
        setup_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_json_format(self) -> None:
        setup_logging(json_format=True)
        logger = get_logger("test")

        cap = LogCapture()
        structlog.configure(processors=[cap])

        logger.info("Port appended to configuration", port=8443)

        assert len(cap.entries) == 1
        assert cap.entries[0]["event"] == "Port appended to configuration"
        assert cap.entries[0]["port"] == 8443

    def test_setup_logging_writes_install_log(self, tmp_path: Path) -> None:
        log_file = tmp_path / "install.log"
        setup_logging(log_file=str(log_file))

        get_logger("wssmux.test").info("Installation completed successfully!")
        for handler in logging.getLogger().handlers:
            handler.flush()

        content = log_file.read_text()
        assert "Installation completed successfully!" in content
        # File lines carry a timestamp prefix
        assert content[:4].isdigit()

    def test_install_log_directory_is_created(self, tmp_path: Path) -> None:
        log_file = tmp_path / "var" / "log" / "wssmux" / "install.log"
        setup_logging(log_file=log_file)

        get_logger("wssmux.test").info("Cron job configured", schedule="0 */6 * * *")
        for handler in logging.getLogger().handlers:
            handler.flush()

        assert log_file.exists()
        assert "Cron job configured" in log_file.read_text()

    def test_unwritable_install_log_falls_back_to_console(self, tmp_path: Path) -> None:
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")

        setup_logging(log_file=blocker / "install.log")

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert not isinstance(handlers[0], logging.FileHandler)

    def test_setup_logging_replaces_handlers(self, tmp_path: Path) -> None:
        setup_logging(log_file=tmp_path / "install.log")
        setup_logging()
        assert len(logging.getLogger().handlers) == 1
