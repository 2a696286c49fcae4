"""
Logging setup for composite-service.

Log records and tagged service output share stdout, one line each. A rotating
log file is added when COMPOSITE_LOG_FILE is set.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler

from .config import config
from .errors import ConfigValidationError

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "error": logging.ERROR,
}

logger = logging.getLogger("composite_service")


def to_logging_level(level: str) -> int:
    """Map a composite-service level name to a logging level."""
    try:
        return LOG_LEVELS[level]
    except KeyError:
        raise ConfigValidationError(f"Unknown log level '{level}', expected one of: {', '.join(LOG_LEVELS)}")


def configure_logging(level: str = None):
    """Attach stdout (and optional rotating file) handlers to the package logger."""
    log_formatter = logging.Formatter(config.log_format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(log_formatter)
    handlers = [console_handler]

    if config.log_file:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        # Rotating file handler (auto-compaction)
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
        )
        file_handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        handlers.append(file_handler)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in handlers:
        logger.addHandler(handler)

    logger.setLevel(to_logging_level(level or config.log_level))
    logger.propagate = False
