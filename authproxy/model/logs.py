import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "authproxy"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None,
                  console: Optional[Console] = None) -> logging.Logger:
    """
    Setup proxy logging: rich console output plus an optional rotating file.

    Args:
        level (int): Level for the ``authproxy`` logger
        log_file (str): Path of the log file, or None to log to the console only
        console (Console): Rich console to render to (stderr by default)

    Returns:
        logging.Logger: the configured ``authproxy`` logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    ))

    if log_file:
        file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=3)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
