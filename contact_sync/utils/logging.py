"""
Logging setup for contact_sync.

Everything under the ``contact_sync`` logger goes to a colored console handler
and to a daily file in <config dir>/logs. Identity-matching decisions go to a
separate per-session file through the ``contact_sync.matching`` logger so a
wrong merge can be traced back to the rule that fired.

Environment overrides: CONTACT_SYNC_LOG_LEVEL, CONTACT_SYNC_DEBUG and
CONTACT_SYNC_LOG_FILE (a path, or "none" to disable the file).
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from contact_sync.utils.paths import resolve_config_dir

# Root logger name for the package hierarchy
ROOT_LOGGER_NAME = "contact_sync"

# Logger used for identity-matching decisions
MATCHING_LOGGER_NAME = "contact_sync.matching"

# Simplified format for console
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MATCHING_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"

# Environment variable names
ENV_LOG_LEVEL = "CONTACT_SYNC_LOG_LEVEL"
ENV_DEBUG = "CONTACT_SYNC_DEBUG"
ENV_LOG_FILE = "CONTACT_SYNC_LOG_FILE"

LOG_FILE_PREFIX = "contact_sync_"
MATCHING_LOG_PREFIX = "matching_"

# Set by setup_logging() so the matching logger and cleanup share a directory
_configured_log_dir: Optional[Path] = None


def default_log_dir() -> Path:
    """Return the default log directory inside the configuration directory."""
    return resolve_config_dir() / "logs"


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    CONTACT_SYNC_DEBUG takes precedence over CONTACT_SYNC_LOG_LEVEL.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from environment or the log directory.

    Returns:
        Path to log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    directory = log_dir or default_log_dir()
    return directory / f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the contact_sync application.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, use verbose format and DEBUG level.
        log_dir: Directory for log files.
        log_file: Explicit log file path, overrides log_dir.
        enable_file_logging: If False, only log to the console.
        use_colors: If True, use colored console output when supported.

    Returns:
        The package root logger
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file or get_log_file_path(log_dir)
        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                # File always captures debug output
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
                logger.addHandler(file_handler)
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    if log_file:
        _configured_log_dir = log_file.parent
    else:
        _configured_log_dir = log_dir

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Remove old sync and matching log files, keeping the newest ones.

    Args:
        log_dir: Directory containing log files. Defaults to the configured one.
        keep_count: Number of files to keep per log type. 0 disables cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    if not logs_dir.exists():
        return 0

    deleted_count = 0
    for prefix in (LOG_FILE_PREFIX, MATCHING_LOG_PREFIX):
        logs = sorted(
            logs_dir.glob(f"{prefix}*.log"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old_log in logs[keep_count:]:
            try:
                old_log.unlink()
                deleted_count += 1
            except OSError as e:
                logging.getLogger(ROOT_LOGGER_NAME).debug(
                    f"Could not delete old log {old_log}: {e}"
                )

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the contact_sync hierarchy.

    Args:
        name: Name of the module (typically __name__)
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def get_matching_log_path(log_dir: Optional[Path] = None) -> Path:
    """Return a timestamped path for this session's matching log."""
    logs_dir = log_dir or _configured_log_dir or default_log_dir()
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return logs_dir / f"{MATCHING_LOG_PREFIX}{timestamp}.log"


def setup_matching_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Set up a dedicated file logger for identity-matching decisions.

    Every candidate checked by the identity matcher, the rule that fired
    (or that none did) and the matched contact id are written here.

    Args:
        log_file: Optional custom path. Defaults to a timestamped file.
        level: Logging level (default: DEBUG)

    Returns:
        The matching logger
    """
    logger = logging.getLogger(MATCHING_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    file_path = log_file or get_matching_log_path()

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(MATCHING_LOG_FORMAT, DATE_FORMAT))
        logger.addHandler(file_handler)
        logger.info(f"Matching log session started at {datetime.now().isoformat()}")
    except OSError as e:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            logging.Formatter(MATCHING_LOG_FORMAT, DATE_FORMAT)
        )
        logger.addHandler(console_handler)
        logger.warning(f"Could not create matching log file {file_path}: {e}")

    return logger


def get_matching_logger() -> logging.Logger:
    """Return the matching logger (propagates to the root until set up)."""
    return logging.getLogger(MATCHING_LOGGER_NAME)


__all__ = [
    "setup_logging",
    "get_logger",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "setup_matching_logger",
    "get_matching_logger",
    "get_matching_log_path",
    "default_log_dir",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
    "MATCHING_LOG_FORMAT",
]
