"""
Structured logging for the provisioning workers.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = (
    "tenant_id",
    "operation",
    "subscription_tier",
    "stack_id",
    "execution_arn",
    "attempt",
    "target_account_id",
    "table_name",
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for CloudWatch friendly structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        return json.dumps(log_entry, default=str)


def get_logger(name: str, level: str = None) -> logging.Logger:
    """Get configured logger instance."""
    logger = logging.getLogger(name)

    # Avoid adding multiple handlers
    if logger.handlers:
        return logger

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)

    logger.propagate = False

    return logger
