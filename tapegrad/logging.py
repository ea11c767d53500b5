"""
Logging configuration for tapegrad.

Features:
- Timestamped, level-tagged records
- Console and optional file output
- Color-coded console output for readability
- Module-specific loggers via `get_logger(__name__)`
"""

import logging
import sys
from pathlib import Path
from typing import Optional


class Colors:
    """ANSI color codes for different log levels."""
    GREY = '\033[90m'
    BLUE = '\033[94m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    BOLD_RED = '\033[91m\033[1m'
    RESET = '\033[0m'


class ColorFormatter(logging.Formatter):
    """Color-coded formatter for console output."""

    COLORS = {
        logging.DEBUG: Colors.GREY,
        logging.INFO: Colors.BLUE,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.BOLD_RED,
    }

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, use_colors: bool = True):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors

    def format(self, record):
        """Format a record, coloring a copy of the level name so other handlers stay plain."""
        if self.use_colors and record.levelno in self.COLORS:
            record = logging.makeLogRecord(record.__dict__)
            record.levelname = f"{self.COLORS[record.levelno]}{record.levelname}{Colors.RESET}"
        return super().format(record)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    use_colors: bool = True,
    log_format: Optional[str] = None
) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file
        use_colors: Enable color-coded console output
        log_format: Custom format string (default: timestamp + level + module + message)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    if log_format is None:
        log_format = '%(asctime)s | %(levelname)-8s | %(name)s: %(message)s'
        date_format = '%Y-%m-%d %H:%M:%S'
    else:
        date_format = None

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColorFormatter(log_format, datefmt=date_format, use_colors=use_colors))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file, mode='a')
        file_handler.setLevel(level)
        # File output doesn't use colors
        file_handler.setFormatter(logging.Formatter(log_format, datefmt=date_format))
        root_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger for a module.

    Usage:
        from tapegrad.logging import get_logger
        logger = get_logger(__name__)

        logger.info("Training started")
        logger.debug("Arena grew to %d blocks", arena.num_blocks)

    Args:
        name: Logger name (typically __name__ of module)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
