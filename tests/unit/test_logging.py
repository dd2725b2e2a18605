"""Unit tests for logging configuration."""

import logging

import pytest

from src.utils.logging import get_logger, log_with_context, setup_logging


class TestLoggingSetup:
    """Test cases for logging setup."""

    def test_setup_logging_default_level(self) -> None:
        """Test setup_logging with default INFO level."""
        setup_logging()
        logger = logging.getLogger("test")

        assert logger.getEffectiveLevel() == logging.INFO

    def test_setup_logging_debug_level(self) -> None:
        """Test setup_logging with DEBUG level."""
        setup_logging(level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_lowercase_level(self) -> None:
        """Test level names are case-insensitive."""
        setup_logging(level="warning")
        assert logging.getLogger().level == logging.WARNING

    def test_setup_logging_custom_format(self) -> None:
        """Test setup_logging accepts custom format without error."""
        setup_logging(level="INFO", log_format="%(levelname)s - %(message)s")
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_invalid_level_fallback(self) -> None:
        """Test setup_logging with invalid level falls back to INFO."""
        setup_logging(level="INVALID")
        assert logging.getLogger().level == logging.INFO

    def test_setup_logging_quiets_libraries(self) -> None:
        """Test HTTP/scheduler/web3 loggers are raised to WARNING."""
        setup_logging(level="DEBUG")

        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger("apscheduler").level == logging.WARNING
        assert logging.getLogger("web3").level == logging.WARNING

    def test_setup_logging_keeps_libraries_when_asked(self) -> None:
        """Test quiet_libraries=False leaves library loggers alone."""
        logging.getLogger("web3").setLevel(logging.NOTSET)
        setup_logging(level="DEBUG", quiet_libraries=False)

        assert logging.getLogger("web3").level == logging.NOTSET


class TestGetLogger:
    """Test cases for get_logger function."""

    def test_get_logger_returns_logger(self) -> None:
        """Test get_logger returns a Logger instance."""
        assert isinstance(get_logger("test_module"), logging.Logger)

    def test_get_logger_name(self) -> None:
        """Test get_logger creates logger with correct name."""
        assert get_logger("test_module_name").name == "test_module_name"

    def test_get_logger_same_instance(self) -> None:
        """Test get_logger returns same instance for same name."""
        assert get_logger("test_same") is get_logger("test_same")


class TestLogWithContext:
    """Test cases for log_with_context function."""

    def test_log_with_context_info(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test logging info message with context."""
        logger = get_logger("test_context")

        with caplog.at_level(logging.INFO, logger="test_context"):
            log_with_context(
                logger,
                "info",
                "Position reallocated",
                user="0xabc",
                index=0,
            )

        assert len(caplog.records) == 1
        message = caplog.records[0].message
        assert message.startswith("Position reallocated | ")
        assert "user=0xabc" in message
        assert "index=0" in message

    def test_log_with_context_no_context(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test logging message without context fields."""
        logger = get_logger("test_no_context")

        with caplog.at_level(logging.INFO, logger="test_no_context"):
            log_with_context(logger, "info", "Simple message")

        assert len(caplog.records) == 1
        assert caplog.records[0].message == "Simple message"

    def test_log_with_context_error(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test logging error message with context."""
        logger = get_logger("test_error_context")

        with caplog.at_level(logging.ERROR, logger="test_error_context"):
            log_with_context(
                logger,
                "error",
                "Reallocation failed",
                kind="execution",
                tx="0x123",
            )

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.levelno == logging.ERROR
        assert "kind=execution" in record.message
        assert "tx=0x123" in record.message
