import logging
import os
import sys


def setup_logger(name: str, level: str | None = None) -> logging.Logger:
    """
    Sets up and returns a stdout logger if no handlers exist yet.

    Parameters:
        name (str): Name of the logger.
        level (str | None): Logging level name. Falls back to the `LOG_LEVEL`
            environment variable and then to INFO.

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(name)
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logger.setLevel(getattr(logging, level_name, logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.propagate = False  # root logger may print as well

    return logger
