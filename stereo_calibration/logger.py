"""
Logging setup for the calibration tools.
"""

import logging
import sys
from pathlib import Path

ROOT_LOGGER_NAME = "stereo_calibration"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(level: int | str = logging.INFO, log_file: str | Path | None = None) -> logging.Logger:
    """
    Configure the package logger with console and optional file handlers.

    Module loggers (``logging.getLogger(__name__)``) propagate to this one.

    Args:
        level: Logging level (name or number)
        log_file: Path to log file (None for console only)

    Returns:
        Configured package logger
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
