import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from .utils.credential_formatter import format_account_for_display

_failure_logger: Optional[logging.Logger] = None


def setup_failure_logger(log_dir: str = "logs") -> logging.Logger:
    """Sets up a dedicated JSON logger for classified account failures."""
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    # Child of the library logger, kept out of the console output
    logger = logging.getLogger("file_cloud.failures")
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Use a rotating file handler to keep log files from growing too large
    handler = RotatingFileHandler(
        os.path.join(log_dir, "auth_failures.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=2,
    )

    class JsonFormatter(logging.Formatter):
        def format(self, record):
            log_record = {
                "timestamp": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "message": record.getMessage(),
            }
            return json.dumps(log_record, default=str)

    handler.setFormatter(JsonFormatter())

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(handler)

    return logger


def get_failure_logger() -> logging.Logger:
    global _failure_logger
    if _failure_logger is None:
        _failure_logger = setup_failure_logger(os.getenv("FILE_CLOUD_LOG_DIR", "logs"))
    return _failure_logger


def log_failure(
    provider_type: str,
    account_id: str,
    stage: str,
    error: Exception,
    resulting_status: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
):
    """Logs a structured record for a failed refresh or provider operation."""

    # Raw HTTP body, when the error still carries a response
    raw_response = None
    response = getattr(error, "response", None)
    if response is not None and hasattr(response, "text"):
        try:
            raw_response = response.text[:2000]
        except Exception:
            raw_response = None

    log_data = {
        "account": format_account_for_display(provider_type, account_id),
        "stage": stage,
        "error_type": type(error).__name__,
        "error_message": str(error),
        "resulting_status": resulting_status,
        "raw_response": raw_response,
        "details": details or {},
    }
    get_failure_logger().error(log_data)
