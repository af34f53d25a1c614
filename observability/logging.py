"""
Structured logging for the storefront backend.

Every record carries the request's correlation id. Delivery codes and
shipping contact details are masked before anything is written, whether
they arrive as `extra` fields, as mapping arguments, or inline in the
message text ("otp=482913").

Usage:
    from observability import get_logger

    logger = get_logger(__name__)
    logger.info("Order placed", extra={"order_id": 42, "total_amount": 640})
"""

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "storefront-backend"
REDACTED = "[REDACTED]"

_correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Libraries that are chatty at INFO
_QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "uvicorn.error": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


def get_correlation_id() -> Optional[str]:
    return _correlation_id_ctx.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_ctx.set(correlation_id)


def generate_correlation_id() -> str:
    return f"req-{uuid.uuid4().hex[:16]}"


class correlation_id_context:
    """Binds a correlation id (given or generated) for the duration of a request."""

    def __init__(self, correlation_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.token = None

    def __enter__(self):
        self.token = _correlation_id_ctx.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb):
        _correlation_id_ctx.reset(self.token)


class CorrelationIDFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "none"
        return True


class SensitiveDataFilter(logging.Filter):
    """Masks credentials, delivery codes and shipping contact details."""

    SENSITIVE_KEYS = {
        "authorization", "token", "session_token", "password", "secret",
        "otp", "otp_code", "delivery_otp", "code", "attempted_code",
        "phone", "shipping_phone", "shipping_address",
    }
    # key=value or key: value pairs written straight into a message
    INLINE_CODE = re.compile(r"\b(otp|otp_code|delivery_otp|code)(\s*[=:]\s*)\d{6}\b", re.IGNORECASE)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.args = self._redact(record.args)
        self._mask_inline_codes(record)

        for key in list(vars(record)):
            if key.lower() in self.SENSITIVE_KEYS:
                setattr(record, key, REDACTED)
        return True

    def _mask_inline_codes(self, record: logging.LogRecord) -> None:
        # Codes can arrive through %-args ("otp=%s"), so scan the rendered message
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return
        masked = self.INLINE_CODE.sub(rf"\1\2{REDACTED}", message)
        if masked != message:
            record.msg = masked
            record.args = None

    def _redact(self, data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: REDACTED if str(k).lower() in self.SENSITIVE_KEYS else self._redact(v)
                for k, v in data.items()
            }
        if isinstance(data, tuple):
            return tuple(self._redact(item) for item in data)
        if isinstance(data, list):
            return [self._redact(item) for item in data]
        return data


class StorefrontJsonFormatter(jsonlogger.JsonFormatter):
    def add_fields(self, log_record: Dict[str, Any], record: logging.LogRecord, message_dict: Dict[str, Any]) -> None:
        super().add_fields(log_record, record, message_dict)
        log_record["timestamp"] = self.formatTime(record, self.datefmt)
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["correlation_id"] = getattr(record, "correlation_id", "none")
        log_record["service"] = SERVICE_NAME
        log_record["environment"] = os.getenv("ENVIRONMENT", "development")
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)


def _build_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return StorefrontJsonFormatter(
            "%(timestamp)s %(level)s %(logger)s %(correlation_id)s %(message)s",
            rename_fields={"timestamp": "@timestamp"},
        )
    return logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(correlation_id)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def setup_logging() -> None:
    """
    Install a single stderr handler on the root logger.

    LOG_LEVEL   DEBUG..CRITICAL (default INFO)
    LOG_FORMAT  json | text (default json when ENVIRONMENT=production)
    """
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    default_format = "json" if os.getenv("ENVIRONMENT") == "production" else "text"
    log_format = os.getenv("LOG_FORMAT", default_format).lower()

    handler = logging.StreamHandler()
    handler.setFormatter(_build_formatter(log_format))
    handler.addFilter(CorrelationIDFilter())
    handler.addFilter(SensitiveDataFilter())

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
