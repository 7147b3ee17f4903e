"""
Logging setup for the ledger and payout services.

Two output formats are supported:
- console: short human-readable lines for local development
- json: one JSON object per line for log aggregation

Bank account numbers and RUTs are masked before anything is written,
including values passed through ``extra=``.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any, Optional

SENSITIVE_PATTERNS = [
    # Chilean RUT, with or without dots: 12.345.678-5 / 12345678-K
    (re.compile(r"\b(\d{1,2})\.?(\d{3})\.?(\d{3})-([\dkK])\b"), r"\1.***.***-\4"),
    # Long digit runs (account numbers): keep the last four
    (re.compile(r"\b\d{6,}(\d{4})\b"), r"****\1"),
]

REDACTED_FIELDS = {
    "account_number",
    "rut",
    "api_key",
    "authorization",
    "token",
}

_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def redact_string(text: str) -> str:
    for pattern, replacement in SENSITIVE_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, depth: int = 0, max_depth: int = 10) -> Any:
    """Recursively mask sensitive keys and patterns in ``data``."""
    if depth > max_depth:
        return "[MAX_DEPTH_EXCEEDED]"

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if str(key).lower().replace("-", "_") in REDACTED_FIELDS:
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive_data(value, depth + 1, max_depth)
        return result
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1, max_depth) for item in data]
    if isinstance(data, str):
        return redact_string(data)
    return data


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RESERVED_ATTRS
    }


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_string(record.getMessage()),
        }
        if record.levelno >= logging.WARNING:
            log_entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        log_entry.update(redact_sensitive_data(_extra_fields(record)))
        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        msg = f"{timestamp} {record.levelname[0]} [{record.name}] {redact_string(record.getMessage())}"

        extras = redact_sensitive_data(_extra_fields(record))
        if extras:
            msg += " [" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]"
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


def configure_logging(level: str = "INFO", json_output: Optional[bool] = None) -> None:
    if json_output is None:
        from .config import settings
        json_output = settings.LOG_FORMAT.lower() == "json"

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(handler)

    # Third-party noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
