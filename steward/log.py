"""
Logging setup for steward.

Every record goes to a rotating file under the data directory and to the
console. The level name in the format is the severity marker operators see.
"""

import logging
from logging.handlers import RotatingFileHandler

from .config import Config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(config: Config, level: int = logging.INFO, console: bool = True):
    """Configure the root logger. Safe to call more than once."""
    config.ensure_dirs()
    log_formatter = logging.Formatter(LOG_FORMAT)

    # Rotating file handler (auto-compaction)
    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.log_max_bytes,
        backupCount=config.log_backup_count,
    )
    file_handler.setFormatter(log_formatter)
    handlers = [file_handler]

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(log_formatter)
        handlers.append(console_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)
