"""
Centralized logging configuration for the Impressionist engine

Usage:
    from impressionist.utils.logger import get_logger, setup_logging

    # Setup logging at application start
    setup_logging(level="INFO")  # or "DEBUG", "WARNING", "ERROR"

    # In your module
    logger = get_logger(__name__)
    logger.info("[Engine] Story loaded")
"""

import logging
import sys
from pathlib import Path
from typing import Literal, Optional

# Color codes for terminal output
COLORS = {
    "DEBUG": "\033[36m",  # Cyan
    "INFO": "\033[32m",  # Green
    "WARNING": "\033[33m",  # Yellow
    "ERROR": "\033[31m",  # Red
    "CRITICAL": "\033[35m",  # Magenta
    "RESET": "\033[0m",
}

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "openai")


class ColoredFormatter(logging.Formatter):
    """Formatter that adds colors to level and logger names"""

    def format(self, record):
        # Work on a copy so file handlers sharing the record stay uncolored
        record = logging.makeLogRecord(record.__dict__)
        levelname = record.levelname
        if levelname in COLORS:
            record.levelname = f"{COLORS[levelname]}{levelname}{COLORS['RESET']}"
        record.name = f"\033[94m{record.name}\033[0m"  # Blue
        return super().format(record)


def setup_logging(
    level: LogLevel = "INFO",
    log_file: Optional[str] = None,
    enable_colors: bool = True,
    include_timestamp: bool = True,
) -> None:
    """
    Setup logging configuration for the application

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If provided, logs will be written to file
        enable_colors: Whether to enable colored output for console
        include_timestamp: Whether to include timestamp in log messages
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if include_timestamp:
        fmt = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        datefmt = "%Y-%m-%d %H:%M:%S"
    else:
        fmt = "%(levelname)-8s | %(name)s | %(message)s"
        datefmt = None

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    if enable_colors and sys.stdout.isatty():
        console_formatter: logging.Formatter = ColoredFormatter(fmt, datefmt=datefmt)
    else:
        console_formatter = logging.Formatter(fmt, datefmt=datefmt)
    console_handler.setFormatter(console_formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = []
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
        root_logger.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging initialized at {level} level")
    if log_file:
        root_logger.info(f"Logging to file: {log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module

    Args:
        name: Name of the logger (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)

