"""
Centralized logging for livescribe.

Everything logs under the 'livescribe' logger. Records always go to a file in
logs/; console output is only added when misc.print_to_terminal is enabled.
"""

import logging
import os
from pathlib import Path

# LIVESCRIBE_LOG_DIR overrides the default logs directory next to the package
LOGS_DIR = Path(os.environ.get("LIVESCRIBE_LOG_DIR", Path(__file__).parent.parent.parent / "logs"))

LOG_FILE = LOGS_DIR / "livescribe.log"

ROOT_LOGGER_NAME = "livescribe"


class LivescribeLogger:
    """Configures the package logger once per process."""

    _instance = None
    _logger = None

    def __init__(self, level=logging.INFO):
        if LivescribeLogger._logger is None:
            LivescribeLogger._logger = self._setup_logger(level)

    @classmethod
    def get_logger(cls):
        if cls._instance is None:
            cls._instance = cls()
        return cls._logger

    def _setup_logger(self, level):
        logger = logging.getLogger(ROOT_LOGGER_NAME)
        logger.setLevel(level)
        logger.propagate = False

        # Reconfiguring replaces handlers
        logger.handlers = []

        # Format: [2024-01-15 14:30:25] ERROR - message
        formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        try:
            LOGS_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(LOG_FILE, mode='a', encoding='utf-8')
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError:
            # Read-only install location: keep logging in memory only
            logger.addHandler(logging.NullHandler())

        return logger

    @classmethod
    def enable_console(cls, level=logging.INFO):
        """Mirror log records to stderr (used when print_to_terminal is on)."""
        logger = cls.get_logger()
        for handler in logger.handlers:
            if getattr(handler, "_livescribe_console", False):
                return
        console = logging.StreamHandler()
        console.setLevel(level)
        console.setFormatter(logging.Formatter('[%(name)s] %(message)s'))
        console._livescribe_console = True
        logger.addHandler(console)

    @classmethod
    def set_level(cls, level):
        cls.get_logger().setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Child of the package logger for a module (pass __name__); shares its handlers."""
    root = LivescribeLogger.get_logger()
    if name == ROOT_LOGGER_NAME:
        return root
    if name.startswith(ROOT_LOGGER_NAME + "."):
        name = name[len(ROOT_LOGGER_NAME) + 1:]
    return root.getChild(name)


def log_exception(exception, context=""):
    """Record an exception caught in a callback or cleanup step, with traceback."""
    logger = LivescribeLogger.get_logger()
    if context:
        logger.error(f"Exception {context}", exc_info=exception)
    else:
        logger.error("Exception occurred", exc_info=exception)


# Initialize logger on import
LivescribeLogger.get_logger()
