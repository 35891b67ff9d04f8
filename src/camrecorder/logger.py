"""
Logging module for Cam Recorder.
Colored console output, rotating log file and per-performer context.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


ROOT_LOGGER = 'camrecorder'
NO_PERFORMER = '-'

FILE_FORMAT = (
    '%(asctime)s | %(levelname)-8s | %(component)-10s | %(performer)-20s | %(message)s'
)

RESET = "\033[0m"
GRAY = "\033[90m"
CYAN = "\033[96m"
LEVEL_COLORS = {
    logging.DEBUG: GRAY,
    logging.INFO: "\033[92m",
    logging.WARNING: "\033[93m",
    logging.ERROR: "\033[91m",
    logging.CRITICAL: "\033[95m",
}


class ContextFilter(logging.Filter):
    """Gives every record the ``performer`` and ``component`` fields the formatters print."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, 'performer', None) is None:
            record.performer = NO_PERFORMER
        record.component = record.name.rsplit('.', 1)[-1]
        return True


class ColoredFormatter(logging.Formatter):
    """Console formatter: time, colored level, performer tag."""

    def __init__(self):
        super().__init__(datefmt='%H:%M:%S')

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, RESET)
        tag = ""
        if record.performer != NO_PERFORMER:
            tag = f"{CYAN}[{record.performer}]{RESET} "

        message = (
            f"{GRAY}{self.formatTime(record, self.datefmt)}{RESET} "
            f"{color}{record.levelname:8}{RESET} {tag}{record.getMessage()}"
        )
        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"
        return message


class PerformerLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the performer name, keeping caller extras."""

    def __init__(self, logger: logging.Logger, performer: str):
        super().__init__(logger, {'performer': performer})

    def process(self, msg, kwargs):
        kwargs['extra'] = {**kwargs.get('extra', {}), **self.extra}
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5
) -> logging.Logger:
    """
    Set up the application logger.

    Args:
        level: Logging level name; unknown names mean INFO.
        log_file: Rotating log file. Console only when None.
        max_size_mb: Size at which the file rotates.
        backup_count: Rotated files kept.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ColoredFormatter())
    handlers.append(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_size_mb * 1024 * 1024,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        handlers.append(file_handler)

    for handler in handlers:
        handler.addFilter(ContextFilter())
        logger.addHandler(handler)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """The application logger, or its child for one component."""
    if name:
        return logging.getLogger(f'{ROOT_LOGGER}.{name}')
    return logging.getLogger(ROOT_LOGGER)


def get_performer_logger(performer: str, name: Optional[str] = None) -> PerformerLoggerAdapter:
    return PerformerLoggerAdapter(get_logger(name), performer)
