"""Centralized logging configuration with rotation."""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_FILE_NAME = 'backtest.log'


def teardown_logging(logger: Optional[logging.Logger] = None) -> None:
    """Flush, detach, and close all handlers from the provided logger."""
    target = logger or logging.getLogger()
    for handler in list(target.handlers):
        target.removeHandler(handler)
        try:
            handler.flush()
            handler.close()
        except (OSError, ValueError):
            # Handler stream already closed.
            pass


def setup_logging(
    log_level: str = 'INFO',
    logs_dir: Optional[Path] = None,
    console_output: bool = True,
    log_file_name: str = LOG_FILE_NAME,
) -> logging.Logger:
    """
    Set up rotating file logging for backtest runs.

    Args:
        log_level: Root logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        logs_dir: Directory for log files. If None, uses 'logs/' in current directory.
        console_output: Whether to mirror INFO and above to stdout
        log_file_name: Name of the rotating log file inside ``logs_dir``

    Returns:
        Configured root logger
    """
    if logs_dir is None:
        logs_dir = Path.cwd() / 'logs'
    logs_dir = Path(logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    # Release descriptors held by a previous setup before reconfiguring.
    teardown_logging(logger)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = logs_dir / log_file_name
    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=3,
        encoding='utf-8',
        delay=True,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.info("Logging initialized at %s level", log_level)
    logger.debug("Log file: %s", log_file)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a module logger (typically called with __name__)."""
    return logging.getLogger(name)
