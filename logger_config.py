import logging
import os
from datetime import datetime

LOGGER_NAME = "fm_logistics"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def configure_logging(logs_dir="logs", level=logging.INFO):
    """Attach console and timestamped file handlers to the application logger."""
    os.makedirs(logs_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_filepath = os.path.join(logs_dir, f"server_{timestamp}.log")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    if logger.hasHandlers():
        logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.FileHandler(log_filepath)
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger, log_filepath


def get_logger(name):
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def setup_logger(session_id, logs_dir="logs"):
    """Sets up a logger to write one distance pass to a unique, timestamped file."""
    os.makedirs(logs_dir, exist_ok=True)

    timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    log_filename = f"distance_pass_{timestamp}_{session_id}.log"
    log_filepath = os.path.join(logs_dir, log_filename)

    logger = logging.getLogger(f"{LOGGER_NAME}.distance_pass_{session_id}")
    logger.setLevel(logging.INFO)

    if logger.hasHandlers():
        logger.handlers.clear()

    handler = logging.FileHandler(log_filepath)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)

    return logger, log_filepath
