"""Logging configuration for the oceanctl package."""
import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Set up a logger with the specified name and log level.

    Args:
        name: The name of the logger
        level: The logging level (default: logging.INFO)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Don't add handlers if they're already configured
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        logger.addHandler(handler)

    return logger


def configure_logging(settings, debug: bool = False) -> logging.Logger:
    """Configure the ``oceanctl`` logger tree from the logging settings.

    Adds a rotating file handler when a log file is configured and lowers
    noisy third-party loggers unless debugging.
    """
    level = logging.DEBUG if debug else getattr(logging, settings.logging.level, logging.INFO)
    logger = logging.getLogger("oceanctl")
    logger.setLevel(level)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if settings.logging.file:
        log_file = Path(settings.logging.file).expanduser().absolute()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=settings.logging.max_size_mb * 1024 * 1024,
            backupCount=settings.logging.backup_count
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if not debug:
        logging.getLogger('paramiko').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)

    return logger
