"""
Logging Setup

Configures loguru for the command line: a readable stderr sink and a
structured JSON log file. Library modules log through the standard
logging module; their records are routed into loguru here.
"""

import inspect
import logging
import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)


class InterceptHandler(logging.Handler):
    """Forward standard logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the caller that issued the record so loguru reports it
        frame, depth = inspect.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(
    level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None
) -> None:
    """
    Install the stderr and JSON file sinks and intercept stdlib logging.

    Args:
        level: Minimum level for both sinks
        log_file: JSON lines file; no file sink if None
    """
    level = level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_path, level=level, serialize=True, rotation="10 MB", retention=10)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
