"""
Logging Utilities

This module sets up logging for the project and applies the logging
section of the YAML configuration to the package loggers.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .config import LoggingConfig

PACKAGE_LOGGER = "drift_registration"

_FILE_FORMAT = (
    '%(asctime)s | %(levelname)s | %(processName)s[%(process)d] | '
    '%(threadName)s | %(name)s | %(message)s'
)


def setup_logger(name: str,
                 level: int = logging.INFO,
                 log_file: Optional[str] = None) -> logging.Logger:
    """
    Set up a logger with consistent formatting.

    Args:
        name: Logger name (usually __name__)
        level: Logging level (default: logging.INFO)
        log_file: Optional log file path. If provided, logs will be written to this file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid adding multiple handlers
    if logger.handlers:
        return logger

    logger.setLevel(level)

    # Simpler format for console, detailed for file
    console_formatter = logging.Formatter(
        '%(asctime)s | %(levelname)s | %(name)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    file_formatter = logging.Formatter(_FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(file_formatter)
        logger.addHandler(file_handler)

    return logger


def configure_logging(config: "LoggingConfig") -> None:
    """
    Apply a LoggingConfig to every logger of this package.

    Loggers created through setup_logger carry their own console handler,
    so only levels are adjusted here; a file handler is attached when the
    config names a log file.

    Args:
        config: Logging section of the application config
    """
    level = getattr(logging, config.level)
    file_formatter = logging.Formatter(_FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    for name, logger in list(logging.root.manager.loggerDict.items()):
        if not isinstance(logger, logging.Logger):
            continue
        if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
            continue
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)

        if config.file and logger.handlers and not any(
            isinstance(h, logging.FileHandler) for h in logger.handlers
        ):
            Path(config.file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(config.file)
            file_handler.setLevel(level)
            file_handler.setFormatter(file_formatter)
            logger.addHandler(file_handler)
