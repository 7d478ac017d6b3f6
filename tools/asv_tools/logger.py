"""
Logging setup shared by the pipeline scripts.
"""

import logging
from pathlib import Path


def setup_logger(log_file=None, log_level=logging.INFO, name='asv_tools'):
    """Set up the package logger with a console handler and an optional log file."""
    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    # Scripts may call this more than once in a session
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    # Create formatter
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    # Create console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Create file handler if log_file specified
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
