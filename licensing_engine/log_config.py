"""
Logging setup for the licensing engine
"""
import logging
import os
from typing import Optional

LOGGER_NAME = 'licensing_engine'
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def configure_logging(debug: bool = False, log_file: Optional[str] = None) -> logging.Logger:
    """Attach console (and optionally file) handlers to the engine logger"""
    logger = get_logger()
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)

    if log_file:
        try:
            os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(file_handler)
            logger.info(f"File-based logging enabled: {log_file}")
        except OSError as e:
            logger.warning(f"Could not set up file logging: {e}")

    return logger


def enable_debug(logger: Optional[logging.Logger] = None) -> None:
    """Turn on debug logging; has no effect on licensing behaviour"""
    logger = logger or get_logger()
    logger.setLevel(logging.DEBUG)
    for handler in logger.handlers:
        handler.setLevel(logging.DEBUG)
    logger.debug("Debug logging enabled")
