"""
Logging for the Fansly live recorder.

Everything logs under the `fansly_recorder` logger. Module loggers are
children of it (`fansly_recorder.monitor`, `fansly_recorder.chat`, ...) and
per-creator messages go through CreatorLoggerAdapter so both console and
file output show which creator a line belongs to.
"""

import logging
import sys
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


ROOT_LOGGER_NAME = 'fansly_recorder'

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ('aiohttp.access', 'aiohttp.client', 'aiohttp.websocket')


class Colors:
    RESET = "\033[0m"
    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"


def _component(record: logging.LogRecord) -> str:
    """Child logger suffix, e.g. 'monitor' for fansly_recorder.monitor."""
    if record.name.startswith(ROOT_LOGGER_NAME + '.'):
        return record.name[len(ROOT_LOGGER_NAME) + 1:]
    if record.name == ROOT_LOGGER_NAME:
        return 'app'
    return record.name


class ColoredFormatter(logging.Formatter):
    """Console formatter. Colors are dropped when output is not a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.GRAY,
        logging.INFO: Colors.GREEN,
        logging.WARNING: Colors.YELLOW,
        logging.ERROR: Colors.RED,
        logging.CRITICAL: Colors.MAGENTA,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{Colors.RESET}" if self.use_color else text

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')
        level = self._paint(f"{record.levelname:8}", self.LEVEL_COLORS.get(record.levelno, Colors.RESET))

        creator = getattr(record, 'creator', None)
        tag = self._paint(f"[{creator}]", Colors.CYAN) + " " if creator else ""

        line = f"{self._paint(timestamp, Colors.GRAY)} {level} {tag}{record.getMessage()}"
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


class FileFormatter(logging.Formatter):
    """Plain pipe-separated lines for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        creator = getattr(record, 'creator', None) or '-'

        line = (
            f"{timestamp} | {record.levelname:8} | {_component(record):14} | "
            f"{creator:20} | {record.getMessage()}"
        )
        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


class CreatorLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the creator being handled."""

    def __init__(self, logger: logging.Logger, creator: str):
        super().__init__(logger, {'creator': creator})

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        extra['creator'] = self.extra['creator']
        kwargs['extra'] = extra
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the application logger.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, logs only to console.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of rotated files to keep.

    Returns:
        The root application logger.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()
    logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(FileFormatter())
        logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if name:
        return logging.getLogger(f'{ROOT_LOGGER_NAME}.{name}')
    return logging.getLogger(ROOT_LOGGER_NAME)


def get_creator_logger(creator: str, component: Optional[str] = None) -> CreatorLoggerAdapter:
    """
    Get a logger adapter for a specific creator.

    Args:
        creator: Creator display name.
        component: Optional child logger name, e.g. 'recorder'.

    Returns:
        CreatorLoggerAdapter with creator context.
    """
    return CreatorLoggerAdapter(get_logger(component), creator)
