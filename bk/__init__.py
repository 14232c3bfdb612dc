import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


__version__ = '0.4.0'


def configure_logging(level: Union[int, str] = logging.INFO, log_dir: Optional[str] = None):
    """
    Configure process-wide logging.

    Called once at startup with explicit parameters instead of reading
    logging configuration from the environment.

    Args:
        level: Log level (name or number)
        log_dir: Directory for the rotating log file (None = console only)
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'bk.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=level, handlers=handlers, force=True)

    logging.getLogger(__name__).debug(
        f"Logging configured (level: {logging.getLevelName(level)})"
    )
