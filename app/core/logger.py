import logging
import os

# Names of the loggers handed out by get_logger
_APP_LOGGERS: set[str] = set()


def get_logger(name: str) -> logging.Logger:
    """Simple logger factory."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    _APP_LOGGERS.add(name)
    return logger


def set_log_level(level: str) -> None:
    """Apply a level to every logger created through get_logger."""
    for name in _APP_LOGGERS:
        logging.getLogger(name).setLevel(level.upper())


# Example: logger = get_logger(__name__)
