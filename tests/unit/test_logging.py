"""Unit tests for Taskweave logging.

This module tests the JSON formatter, the per-operation engine log and
the operation logging helpers.
"""

import json
import logging
import pytest
from unittest.mock import patch

from taskweave.taskweave_logging import (
    JsonFormatter,
    LogSettings,
    OperationLog,
    log_error_with_context,
    log_operation,
    log_performance,
    normalize_level,
    setup_logging,
)


def make_record(message, level=logging.INFO, exc_info=None):
    return logging.getLogger("test").makeRecord("test", level, __file__, 10, message, (), exc_info)


@pytest.fixture
def reset_taskweave_logger():
    yield
    logger = logging.getLogger("taskweave")
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)


class TestJsonFormatter:
    """Test cases for JsonFormatter."""

    def test_json_formatter_basic(self):
        """Test basic JSON formatting."""
        data = json.loads(JsonFormatter().format(make_record("Test message")))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert "line" in data

    def test_json_formatter_with_exception(self):
        """Test JSON formatting with exception info."""
        try:
            raise ValueError("Test exception")
        except ValueError:
            import sys

            record = make_record("Test message", logging.ERROR, sys.exc_info())

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "ERROR"
        assert "ValueError" in data["exception"]

    def test_json_formatter_with_extra_fields(self):
        """Test JSON formatting with extra fields."""
        record = make_record("Test message")
        record.extra_fields = {"custom_field": "custom_value", "path": object()}

        data = json.loads(JsonFormatter().format(record))

        assert data["custom_field"] == "custom_value"
        assert isinstance(data["path"], str)


class TestLevels:
    """Test cases for level names."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("debug", "debug"),
            ("WARNING", "warn"),
            (" error ", "error"),
            ("success", "success"),
            (None, "info"),
            (logging.DEBUG, "debug"),
            (logging.WARNING, "warn"),
            (logging.CRITICAL, "error"),
        ],
    )
    def test_normalize_level(self, raw, expected):
        """Test level names and stdlib numbers normalize."""
        assert normalize_level(raw) == expected

    def test_unknown_level(self):
        """Test an unknown level name is rejected."""
        with pytest.raises(ValueError, match="Unknown log level"):
            normalize_level("loud")

    def test_threshold(self):
        """Test settings only enable levels at or above the threshold."""
        settings = LogSettings(level="warning")

        assert settings.level == "warn"
        assert settings.enabled_for("error")
        assert settings.enabled_for("warn")
        assert not settings.enabled_for("info")
        assert not settings.enabled_for("success")


class TestOperationLog:
    """Test cases for the engine operation log."""

    def test_warnings_recorded(self):
        """Test warnings and errors are kept while info is not."""
        log = OperationLog()

        log.info("renumbered")
        log.warn("dropped 4")
        log.error("broken")

        assert log.messages == [("warn", "dropped 4"), ("error", "broken")]
        assert log.warnings == ["dropped 4"]

    def test_forwards_above_threshold(self, caplog):
        """Test messages at or above the threshold reach the logging tree."""
        caplog.set_level(logging.DEBUG, logger="taskweave.engine")
        log = OperationLog(LogSettings(level="warn"))

        log.info("quiet")
        log.warn("loud")

        records = [record for record in caplog.records if record.name == "taskweave.engine"]
        assert [record.getMessage() for record in records] == ["loud"]
        assert records[0].levelno == logging.WARNING

    def test_custom_logger_name(self, caplog):
        """Test the target logger comes from the settings."""
        caplog.set_level(logging.DEBUG, logger="taskweave.custom")
        log = OperationLog(LogSettings(level="debug", logger_name="taskweave.custom"))

        log.debug("hello")

        assert [record.name for record in caplog.records] == ["taskweave.custom"]


class TestLogHelpers:
    """Test cases for log_performance, log_operation and log_error_with_context."""

    def test_log_performance_success(self, caplog):
        """Test the decorator logs completion and returns the result."""
        caplog.set_level(logging.DEBUG, logger="taskweave.performance")

        @log_performance("test_operation")
        def test_function():
            return "test_result"

        assert test_function() == "test_result"
        completed = [record for record in caplog.records if "Completed operation" in record.getMessage()]
        assert completed[0].extra_fields["status"] == "success"

    def test_log_performance_failure(self, caplog):
        """Test the decorator logs failures and re-raises."""
        caplog.set_level(logging.DEBUG, logger="taskweave.performance")

        @log_performance("test_operation")
        def test_function():
            raise ValueError("Test error")

        with pytest.raises(ValueError):
            test_function()
        failed = [record for record in caplog.records if record.levelno == logging.ERROR]
        assert failed[0].extra_fields["error_type"] == "ValueError"

    def test_log_operation_success(self):
        """Test successful operation logging."""
        with patch("taskweave.taskweave_logging.std_logging.getLogger") as mock_logger:
            with log_operation("test_operation", param1="value1"):
                pass

            assert mock_logger.return_value.info.called
            assert not mock_logger.return_value.error.called

    def test_log_operation_with_exception(self):
        """Test operation logging with exception."""
        with patch("taskweave.taskweave_logging.std_logging.getLogger") as mock_logger:
            with pytest.raises(ValueError):
                with log_operation("test_operation"):
                    raise ValueError("Test error")

            assert "Test error" in str(mock_logger.return_value.error.call_args)

    def test_log_error_with_context(self):
        """Test errors are logged with their context."""
        with patch("taskweave.taskweave_logging.std_logging.getLogger") as mock_logger:
            log_error_with_context(ValueError("Test error"), {"operation": "remove_task"}, task_id=3)

            kwargs = mock_logger.return_value.error.call_args.kwargs
            fields = kwargs["extra"]["extra_fields"]
            assert fields["error_type"] == "ValueError"
            assert fields["context"] == {"operation": "remove_task"}
            assert fields["task_id"] == 3
            assert kwargs["exc_info"] is True


class TestSetupLogging:
    """Integration tests for logging configuration."""

    def test_setup_logging_writes_json_file(self, tmp_path, reset_taskweave_logger):
        """Test the log file receives JSON lines."""
        log_file = tmp_path / "taskweave.log"

        setup_logging(log_level="debug", log_file=log_file)
        logging.getLogger("taskweave.test").info("Test message")
        for handler in logging.getLogger("taskweave").handlers:
            handler.flush()

        lines = log_file.read_text().strip().split("\n")
        entries = [json.loads(line) for line in lines]
        assert any(entry["message"] == "Test message" for entry in entries)

    def test_setup_logging_replaces_handlers(self, reset_taskweave_logger):
        """Test repeated setup does not stack handlers."""
        setup_logging("info")
        setup_logging("warn")

        logger = logging.getLogger("taskweave")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
