"""
Centralized logging configuration for rrdb.
Provides per-component loggers under the "rrdb" namespace with optional file output.
"""

import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional

from .config import get_config


LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL
}


class RRDBLogger:
    """Centralized logger for rrdb components."""

    ROOT_NAME = "rrdb"

    _loggers = {}
    _initialized = False
    _log_dir = None
    _log_file = None
    _log_level = logging.INFO

    @classmethod
    def setup(cls, log_dir: Optional[str] = None, log_level: Optional[str] = None,
              console_output: Optional[bool] = None):
        """Setup logging for all rrdb components.

        Arguments left as None come from the logging section of the global config.

        Args:
            log_dir: Directory for the log file. No file is written when None.
            log_level: Level name, unknown names fall back to INFO
            console_output: Also print WARNING+ messages to stdout
        """
        if cls._initialized:
            return

        if log_dir is None or log_level is None or console_output is None:
            defaults = get_config().logging
            log_dir = defaults.log_dir if log_dir is None else log_dir
            log_level = defaults.level if log_level is None else log_level
            console_output = defaults.console_output if console_output is None else console_output

        cls._log_level = LEVEL_MAP.get(log_level.upper(), logging.INFO)

        detailed_formatter = logging.Formatter(
            '%(asctime)s | %(name)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        simple_formatter = logging.Formatter(
            '%(asctime)s | %(levelname)s | %(message)s',
            datefmt='%H:%M:%S'
        )

        # Only the package logger is configured; the host owns the root logger
        package_logger = logging.getLogger(cls.ROOT_NAME)
        package_logger.setLevel(cls._log_level)
        package_logger.handlers.clear()

        if log_dir is not None:
            cls._log_dir = Path(log_dir)
            cls._log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            cls._log_file = cls._log_dir / f"rrdb_{timestamp}.log"
            file_handler = logging.FileHandler(cls._log_file)
            file_handler.setLevel(cls._log_level)
            file_handler.setFormatter(detailed_formatter)
            package_logger.addHandler(file_handler)

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(logging.WARNING)  # Only warnings/errors to console
            console_handler.setFormatter(simple_formatter)
            package_logger.addHandler(console_handler)

        cls._initialized = True

        init_logger = cls.get_logger("RRDBLogger")
        init_logger.info(f"Logging initialized - Level: {log_level}, File: {cls._log_file}")
        if console_output:
            init_logger.info("Console output enabled for WARNING+ messages")

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """Get a logger for a specific component."""
        if not cls._initialized:
            cls.setup()  # Initialize with defaults if not already done

        if name not in cls._loggers:
            cls._loggers[name] = logging.getLogger(f"{cls.ROOT_NAME}.{name}")

        return cls._loggers[name]

    @classmethod
    def set_level(cls, level: str):
        """Change logging level for all rrdb loggers."""
        new_level = LEVEL_MAP.get(level.upper(), logging.INFO)
        logging.getLogger(cls.ROOT_NAME).setLevel(new_level)
        cls._log_level = new_level

    @classmethod
    def get_log_file(cls) -> Optional[Path]:
        """Get the current log file path, None when logging to file is off."""
        return cls._log_file

    @classmethod
    def reset(cls):
        """Drop handlers and forget the setup (mainly for testing)."""
        package_logger = logging.getLogger(cls.ROOT_NAME)
        for handler in list(package_logger.handlers):
            handler.close()
            package_logger.removeHandler(handler)
        package_logger.setLevel(logging.NOTSET)
        cls._loggers = {}
        cls._initialized = False
        cls._log_dir = None
        cls._log_file = None
        cls._log_level = logging.INFO


def get_logger(name: str) -> logging.Logger:
    """Convenience function to get a logger."""
    return RRDBLogger.get_logger(name)
