import os
import logging
from logging.handlers import RotatingFileHandler

LOG_DIR = os.getenv("INVOICE_REVIEW_LOG_DIR", "logs")
CONSOLE_LEVEL = os.getenv("INVOICE_REVIEW_LOG_LEVEL", "INFO").upper()
MAX_LOG_SIZE = 5 * 1024 * 1024  # 5 MB
BACKUP_COUNT = 3
ROOT_LOGGER = "invoice_review"

FORMATTER = logging.Formatter(
    "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
)

# One handler per file: stores share workflow_store.log, and two
# RotatingFileHandlers on one path would rotate it out from under each other
_file_handlers: dict = {}
_console_handler = None


def _get_console_handler() -> logging.Handler:
    global _console_handler
    if _console_handler is None:
        _console_handler = logging.StreamHandler()
        _console_handler.setFormatter(FORMATTER)
        _console_handler.setLevel(getattr(logging, CONSOLE_LEVEL, logging.INFO))
    return _console_handler


def _get_file_handler(log_file_name: str) -> logging.Handler:
    log_dir_path = os.path.join(os.getcwd(), LOG_DIR)
    log_file_path = os.path.join(log_dir_path, log_file_name)
    handler = _file_handlers.get(log_file_path)
    if handler is None:
        os.makedirs(log_dir_path, exist_ok=True)
        handler = RotatingFileHandler(
            log_file_path, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
        handler.setFormatter(FORMATTER)
        handler.setLevel(logging.DEBUG)
        _file_handlers[log_file_path] = handler
    return handler


def setup_logger(
    name: str = None,
    log_file_name: str = None,
) -> logging.Logger:
    """
    Return the logger for a pipeline component.

    Loggers live under the ``invoice_review`` namespace so an embedding
    application can tune them as a group. Each writes to the console at
    INVOICE_REVIEW_LOG_LEVEL and to a rotating file in LOG_DIR at DEBUG.

    Args:
        name (str): Component name, e.g. "ExtractionEngine".
        log_file_name (str): File inside LOG_DIR; derived from the name if omitted.

    Returns:
        logging.Logger: Configured logger instance.
    """
    component = name or "pipeline"
    if not log_file_name:
        log_file_name = f"{component.replace('.', '_').lower()}.log"

    logger = logging.getLogger(f"{ROOT_LOGGER}.{component}")
    logger.setLevel(logging.DEBUG)

    if logger.handlers:
        return logger

    logger.addHandler(_get_console_handler())
    logger.addHandler(_get_file_handler(log_file_name))
    logger.propagate = False

    return logger
