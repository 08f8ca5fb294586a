"""
Logging configuration utilities.

This module provides functions for setting up and configuring logging.
"""
import logging
import os
from typing import Optional

DEFAULT_LOG_FILE = "/tmp/fortress.log"

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def setup_logging(debug: bool = False, log_file: Optional[str] = DEFAULT_LOG_FILE) -> Optional[str]:
    """
    Configure logging for the application.

    Console output goes through basicConfig. Every record is also appended to
    the log file so an interrupted run can be inspected afterwards.

    Args:
        debug: Whether to enable debug logging
        log_file: Path of the persistent log file, or None to disable it

    Returns:
        The log file actually in use, or None if it could not be opened
    """
    level = logging.DEBUG if debug else logging.INFO

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT
    )

    logger = logging.getLogger('fortress')
    logger.setLevel(level)

    if not log_file:
        return None

    # Avoid stacking handlers when called more than once in a process
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(log_file):
            return log_file

    try:
        file_handler = logging.FileHandler(log_file)
    except OSError as e:
        logger.warning(f"Could not open log file {log_file}: {e}")
        return None

    # The file always records debug detail, regardless of console verbosity
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATEFMT))
    logger.addHandler(file_handler)
    logger.setLevel(logging.DEBUG)
    for handler in logging.getLogger().handlers:
        handler.setLevel(level)

    return log_file
