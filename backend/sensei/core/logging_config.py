# backend/sensei/core/logging_config.py
import logging

from sensei.core.config import Settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER_NAME = "sensei"


def configure_logging(settings: Settings) -> logging.Logger:
    """
    Configure process-wide logging once at startup and return the root
    application logger. Components receive children of this logger.
    """
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    return logging.getLogger(ROOT_LOGGER_NAME)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
