"""
Logger setup shared by the homomorphic encryption modules.

Each module gets its own named logger writing DEBUG to ``logs/<name>.log``
and INFO to the console.
"""

import logging
import os
import threading

LOG_DIR = "logs"
LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(filename)s:%(lineno)d] %(message)s'

_setup_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """Return the module logger, attaching file and console handlers once."""
    logger = logging.getLogger(name)

    with _setup_lock:
        if getattr(logger, "_he_configured", False):
            return logger

        logger.setLevel(logging.DEBUG)
        formatter = logging.Formatter(LOG_FORMAT)

        try:
            if not os.path.exists(LOG_DIR):
                os.makedirs(LOG_DIR, exist_ok=True)
            log_file_path = os.path.join(LOG_DIR, f"{name}.log")
        except OSError as e:
            log_file_path = f"{name}.log"
            logger.warning(f"Could not create {LOG_DIR} directory, logging to {log_file_path}: {e}")

        file_handler = logging.FileHandler(log_file_path, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

        logger.propagate = False
        logger._he_configured = True

    return logger
