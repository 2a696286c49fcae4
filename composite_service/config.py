"""
Configuration for composite-service.

Loads settings from environment variables with sensible defaults. These are
the defaults applied to every composite service config; individual services
may override them.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    """Composite service settings."""

    # Logging
    log_level: str = os.environ.get("COMPOSITE_LOG_LEVEL", "info")
    log_format: str = os.environ.get("COMPOSITE_LOG_FORMAT", "%(message)s")
    log_file: Path = None
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Process management
    restart_delay: float = float(os.environ.get("COMPOSITE_RESTART_DELAY", "1"))
    log_tail_length: int = int(os.environ.get("COMPOSITE_LOG_TAIL_LENGTH", "0"))

    def __post_init__(self):
        """Normalize the log level and resolve optional paths."""
        self.log_level = self.log_level.lower()
        log_file = os.environ.get("COMPOSITE_LOG_FILE")
        if self.log_file is None and log_file:
            self.log_file = Path(log_file).expanduser()


config = Config()
