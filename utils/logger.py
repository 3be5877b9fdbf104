import logging

import config

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_logger(name: str) -> logging.Logger:
    """Named logger with a single console handler. Level from Settings.LOG_LEVEL."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(FORMAT))
    logger.addHandler(handler)
    logger.setLevel(config.settings.LOG_LEVEL.upper())
    logger.propagate = False
    return logger
