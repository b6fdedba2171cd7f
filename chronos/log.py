"""
Logging setup.

Modules log through ``logging.getLogger(__name__)``; the CLI configures
the root logger once with the level from the worker configuration.
"""

import logging
from pathlib import Path
from typing import Optional

LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
    'fatal': logging.CRITICAL,
}


def parse_level(level: Optional[str]) -> int:
    """Map a configured level name to a logging level (default INFO)."""
    if not level:
        return logging.INFO
    try:
        return LEVELS[level.lower()]
    except KeyError:
        raise ValueError(f"malformed log level: {level!r}") from None


def setup_logging(level: Optional[str] = "info", log_file: Optional[str] = None, verbose: bool = False):
    """Setup logging configuration."""
    log_level = logging.DEBUG if verbose else parse_level(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)

    # APScheduler is chatty at INFO
    logging.getLogger('apscheduler').setLevel(max(log_level, logging.WARNING))


def nop_logger(name: str = "chronos.nop") -> logging.Logger:
    """Return a logger that discards everything, for tests."""
    nop = logging.getLogger(name)
    if not nop.handlers:
        nop.addHandler(logging.NullHandler())
    nop.propagate = False
    nop.disabled = True
    return nop
