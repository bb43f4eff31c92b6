import logging
import os
import sys
from logging import Handler
from typing import Optional

from tqdm import tqdm

LOGGER_NAME = "ai_translator"


class TqdmLoggingHandler(Handler):
    """
    Logging handler that writes through tqdm.write.
    Keeps log lines from tearing the consensus progress bar.
    """
    def __init__(self, level=logging.NOTSET):
        super().__init__(level)

    def emit(self, record):
        try:
            msg = self.format(record)
            tqdm.write(msg, file=sys.stderr)
            self.flush()
        except (KeyboardInterrupt, SystemExit):
            raise
        except Exception:
            self.handleError(record)


def setup_logger(log_level_str: str, log_file_path: Optional[str] = None, log_to_console: bool = True) -> logging.Logger:
    """
    Configure the ``ai_translator`` logger tree.

    Every module logs through ``logging.getLogger(__name__)``, so the handlers
    installed here receive records from the pipeline, the consensus engine,
    the backends and the plugins alike.

    Args:
        log_level_str: The logging level as a string (e.g., 'INFO', 'DEBUG').
        log_file_path: Optional path to a log file. No file handler when empty.
        log_to_console: Whether to add the tqdm-aware console handler.

    Returns:
        The configured logger instance.
    """
    logger = logging.getLogger(LOGGER_NAME)

    log_level = getattr(logging, str(log_level_str).upper(), logging.INFO)
    logger.setLevel(log_level)

    # Clear any existing handlers to prevent duplicate logging
    if logger.hasHandlers():
        logger.handlers.clear()

    logger.propagate = False

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if log_file_path:
        log_dir = os.path.dirname(log_file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    if log_to_console:
        tqdm_handler = TqdmLoggingHandler()
        tqdm_handler.setFormatter(formatter)
        logger.addHandler(tqdm_handler)

    return logger
