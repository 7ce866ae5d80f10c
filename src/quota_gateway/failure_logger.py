import json
import logging
import os
from logging.handlers import RotatingFileHandler

import httpx

from .core.constants import FAILURE_LOGGER_NAME
from .core.errors import mask_credential

_failure_logger = None


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.msg if isinstance(record.msg, dict) else record.getMessage(),
        }
        return json.dumps(log_record, default=str)


def setup_failure_logger():
    """Sets up a dedicated JSON logger for failed upstream calls."""
    logger = logging.getLogger(FAILURE_LOGGER_NAME)
    logger.setLevel(logging.INFO)

    # Keep failure records out of the application's root handlers
    logger.propagate = False

    enabled = os.getenv("FAILURE_LOG_ENABLED", "true").strip().lower() not in {"0", "false", "no", "off"}
    if not enabled:
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
        return logger

    log_dir = os.getenv("LOG_DIR", "logs")
    if not os.path.exists(log_dir):
        os.makedirs(log_dir, exist_ok=True)

    # Use a rotating file handler to keep log files from growing too large
    handler = RotatingFileHandler(
        os.path.join(log_dir, "failures.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=2,
    )
    handler.setFormatter(JsonFormatter())

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(handler)

    return logger


def get_failure_logger():
    global _failure_logger
    if _failure_logger is None:
        _failure_logger = setup_failure_logger()
    return _failure_logger


def log_failure(credential: str, operation: str, attempt: int, error: Exception, error_kind: str, params: dict = None):
    """Logs a structured record for a failed upstream call."""

    # Try to get the raw response from the exception if it exists
    raw_response = None
    response = getattr(error, "response", None)
    if response is not None:
        try:
            text = getattr(response, "text", None)
        except httpx.ResponseNotRead:
            text = None
        if isinstance(text, str):
            raw_response = text[:2000]

    log_data = {
        "credential": mask_credential(credential),
        "operation": operation,
        "attempt_number": attempt,
        "error_kind": error_kind,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "raw_response": raw_response,
        "params": params or {},
    }
    get_failure_logger().error(log_data)
