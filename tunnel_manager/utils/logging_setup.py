"""
Logging Setup module
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = (
    '%(asctime)s - %(name)s - %(levelname)s - '
    '%(funcName)s:%(lineno)d - %(message)s'
)

LevelType = Union[int, str]


def _to_level(level: LevelType) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def get_logger(name: str, level: LevelType = logging.INFO) -> logging.Logger:
    """Get a logger with a console handler attached once"""
    logger = logging.getLogger(name)

    if not logger.handlers:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(_to_level(level))
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console_handler)
        logger.setLevel(_to_level(level))

    return logger


def setup_file_logging(
    name: str = 'tunnel_manager',
    log_file: Optional[Path] = None,
    level: LevelType = logging.INFO
) -> logging.Logger:
    """Attach a rotating file handler to the named logger"""
    logger = logging.getLogger(name)

    if log_file is None:
        log_dir = Path.home() / '.config' / 'tunnel-manager' / 'logs'
        log_file = log_dir / 'tunnel_manager.log'

    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    for handler in logger.handlers:
        if (isinstance(handler, logging.FileHandler)
                and Path(handler.baseFilename) == log_file.resolve()):
            return logger

    # Tunnel output is chatty; cap the file size
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2 * 1024 * 1024, backupCount=3, encoding='utf-8'
    )
    file_handler.setLevel(_to_level(level))
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    logger.addHandler(file_handler)
    logger.setLevel(_to_level(level))

    return logger


def set_logging_level(level: LevelType = "INFO"):
    """Set logging level for the root and package loggers"""
    log_level = _to_level(level)
    logging.getLogger().setLevel(log_level)
    logging.getLogger('tunnel_manager').setLevel(log_level)
