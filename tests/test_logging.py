"""
Tests for the logging configuration module.

Tests the centralized logging configuration, log cleanup and the
dedicated matching log.
"""

import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from contact_sync.utils.logging import (
    CONSOLE_FORMAT,
    MATCHING_LOGGER_NAME,
    VERBOSE_FORMAT,
    ColoredFormatter,
    cleanup_old_logs,
    get_log_file_path,
    get_log_level_from_env,
    get_logger,
    get_matching_log_path,
    get_matching_logger,
    setup_logging,
    setup_matching_logger,
)


@pytest.fixture(autouse=True)
def reset_loggers():
    """Close handlers added by a test so log files are not left open."""
    yield
    for name in ("contact_sync", MATCHING_LOGGER_NAME):
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        logger.propagate = True


class TestConstants:
    """Tests for module constants."""

    def test_console_format_defined(self):
        assert "%(message)s" in CONSOLE_FORMAT

    def test_verbose_format_defined(self):
        assert "%(filename)s" in VERBOSE_FORMAT
        assert "%(lineno)d" in VERBOSE_FORMAT

    def test_exported_names_exist(self):
        import contact_sync.utils.logging as log_module

        assert all(hasattr(log_module, name) for name in log_module.__all__)
        assert "set_log_level" not in log_module.__all__


class TestGetLogLevelFromEnv:
    """Tests for get_log_level_from_env function."""

    @patch.dict(os.environ, {"CONTACT_SYNC_DEBUG": "true"}, clear=False)
    def test_debug_mode_from_env(self):
        assert get_log_level_from_env() == logging.DEBUG

    @patch.dict(
        os.environ,
        {"CONTACT_SYNC_LOG_LEVEL": "WARNING", "CONTACT_SYNC_DEBUG": ""},
        clear=False,
    )
    def test_log_level_warning(self):
        assert get_log_level_from_env() == logging.WARNING

    @patch.dict(
        os.environ,
        {"CONTACT_SYNC_LOG_LEVEL": "WARN", "CONTACT_SYNC_DEBUG": ""},
        clear=False,
    )
    def test_warn_alias_for_warning(self):
        assert get_log_level_from_env() == logging.WARNING

    @patch.dict(
        os.environ,
        {"CONTACT_SYNC_LOG_LEVEL": "LOUD", "CONTACT_SYNC_DEBUG": ""},
        clear=False,
    )
    def test_invalid_level_defaults_to_info(self):
        assert get_log_level_from_env() == logging.INFO


class TestGetLogFilePath:
    """Tests for get_log_file_path function."""

    @patch.dict(os.environ, {"CONTACT_SYNC_LOG_FILE": "/custom/path/app.log"})
    def test_custom_log_file_from_env(self):
        assert get_log_file_path() == Path("/custom/path/app.log")

    @patch.dict(os.environ, {"CONTACT_SYNC_LOG_FILE": "disabled"})
    def test_log_file_disabled(self):
        assert get_log_file_path() is None

    def test_dated_file_in_log_dir(self, tmp_path):
        with patch.dict(os.environ, {}, clear=True):
            path = get_log_file_path(tmp_path)
        assert path.parent == tmp_path
        assert path.name.startswith("contact_sync_")
        assert path.suffix == ".log"


class TestColoredFormatter:
    """Tests for ColoredFormatter class."""

    def test_formatter_with_colors_disabled(self):
        formatter = ColoredFormatter(use_colors=False)
        assert formatter.use_colors is False

    @patch.dict(os.environ, {"NO_COLOR": "1"})
    def test_formatter_respects_no_color_env(self):
        with patch("sys.stderr") as mock_stderr:
            mock_stderr.isatty.return_value = True
            assert ColoredFormatter(use_colors=True).use_colors is False

    def test_format_record_without_colors(self):
        formatter = ColoredFormatter(fmt="%(levelname)s: %(message)s", use_colors=False)
        record = logging.LogRecord(
            "test", logging.INFO, "test.py", 1, "Test message", None, None
        )
        assert formatter.format(record) == "INFO: Test message"


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_logging_returns_package_logger(self):
        logger = setup_logging(enable_file_logging=False)
        assert logger.name == "contact_sync"

    def test_setup_logging_with_verbose(self):
        logger = setup_logging(verbose=True, enable_file_logging=False)
        assert logger.level == logging.DEBUG

    def test_setup_logging_clears_handlers(self):
        setup_logging(enable_file_logging=False)
        logger = setup_logging(enable_file_logging=False)
        assert len(logger.handlers) == 1

    def test_setup_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "sync.log"
        logger = setup_logging(
            level=logging.INFO, log_file=log_file, enable_file_logging=True
        )
        logger.info("hello file")

        for handler in logger.handlers:
            handler.flush()
        assert log_file.exists()
        assert "hello file" in log_file.read_text(encoding="utf-8")

    def test_setup_logging_propagate_disabled(self):
        logger = setup_logging(enable_file_logging=False)
        assert logger.propagate is False


class TestGetLogger:
    """Tests for get_logger function."""

    def test_get_logger_with_module_name(self):
        assert get_logger("contact_sync.sync.pull").name == "contact_sync.sync.pull"

    def test_get_logger_without_prefix(self):
        assert get_logger("custom").name == "contact_sync.custom"


class TestCleanupOldLogs:
    """Tests for cleanup_old_logs function."""

    def _touch(self, directory, name, mtime):
        path = directory / name
        path.write_text("x", encoding="utf-8")
        os.utime(path, (mtime, mtime))
        return path

    def test_keeps_newest_per_prefix(self, tmp_path):
        for day in range(1, 5):
            self._touch(tmp_path, f"contact_sync_2026010{day}.log", 1000 + day)
            self._touch(tmp_path, f"matching_2026010{day}_000000.log", 1000 + day)
        self._touch(tmp_path, "unrelated.log", 1)

        deleted = cleanup_old_logs(tmp_path, keep_count=2)

        assert deleted == 4
        remaining = sorted(p.name for p in tmp_path.iterdir())
        assert remaining == [
            "contact_sync_20260103.log",
            "contact_sync_20260104.log",
            "matching_20260103_000000.log",
            "matching_20260104_000000.log",
            "unrelated.log",
        ]

    def test_zero_keep_count_disables(self, tmp_path):
        self._touch(tmp_path, "contact_sync_20260101.log", 1)
        assert cleanup_old_logs(tmp_path, keep_count=0) == 0

    def test_missing_directory(self, tmp_path):
        assert cleanup_old_logs(tmp_path / "nope", keep_count=1) == 0


class TestMatchingLogger:
    """Tests for the matching log."""

    def test_get_matching_log_path(self, tmp_path):
        path = get_matching_log_path(tmp_path)
        assert path.parent == tmp_path
        assert path.name.startswith("matching_")

    def test_get_matching_logger(self):
        assert get_matching_logger().name == MATCHING_LOGGER_NAME

    def test_setup_matching_logger(self, tmp_path):
        log_file = tmp_path / "matching_test.log"
        logger = setup_matching_logger(log_file=log_file)
        logger.debug("MATCH a -> b via exact_email")

        for handler in logger.handlers:
            handler.flush()
        content = log_file.read_text(encoding="utf-8")
        assert "Matching log session started" in content
        assert "exact_email" in content
        assert logger.propagate is False
