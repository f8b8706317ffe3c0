"""
Structured JSON Logging Configuration

Provides centralized logging configuration with:
- JSON formatted output for machine parsing
- Correlation IDs (HTTP request or dispatch) tracked via contextvars
- Redaction of bearer credentials before records leave the process
- Optional rotating file output
"""
import logging
import logging.handlers
import os
import contextvars
import re
from datetime import datetime, timezone
from typing import Optional
from pythonjsonlogger import jsonlogger

from pushgate.core.config import settings

# Correlation ID for the current HTTP request or dispatch call
correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id', default=None
)

APP_VERSION = "1.0.0"


class CorrelationIdFilter(logging.Filter):
    """Adds correlation_id to every record so one dispatch can be followed across providers."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


class CredentialRedactingFilter(logging.Filter):
    """
    Masks provider credentials that end up in log messages.

    Covers bearer tokens from Authorization headers and PEM key material.
    Newlines are flattened so a provider error body cannot forge log lines.
    """

    PATTERNS = [
        (re.compile(r'(?i)(bearer\s+)[A-Za-z0-9\-_\.=]+'), r'\1[REDACTED]'),
        (re.compile(r'-----BEGIN [A-Z ]+-----.*?-----END [A-Z ]+-----', re.S), '[REDACTED KEY]'),
        (re.compile(r'\r\n|\n|\r'), ' '),
    ]

    def _clean(self, value: str) -> str:
        for pattern, replacement in self.PATTERNS:
            value = pattern.sub(replacement, value)
        return value

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._clean(record.msg)
        if record.args and isinstance(record.args, tuple):
            record.args = tuple(
                self._clean(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter adding standard fields to all log entries.

    Output format:
    {
        "timestamp": "2026-01-05T10:30:00.000000+00:00",
        "level": "INFO",
        "message": "APNS notification sent",
        "module": "apns_provider",
        "logger": "pushgate.services.push.apns_provider",
        "correlation_id": "dispatch-uuid",
        ...extra fields...
    }
    """

    def add_fields(
        self,
        log_record: dict,
        record: logging.LogRecord,
        message_dict: dict
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        if not log_record.get('timestamp'):
            log_record['timestamp'] = datetime.now(timezone.utc).isoformat()

        log_record['level'] = record.levelname
        log_record['module'] = record.module
        log_record['logger'] = record.name
        log_record['correlation_id'] = getattr(record, 'correlation_id', '-')

        if 'message' not in log_record:
            log_record['message'] = record.getMessage()


def _attach_filters(handler: logging.Handler) -> None:
    handler.addFilter(CorrelationIdFilter())
    handler.addFilter(CredentialRedactingFilter())


def setup_logging(
    log_level: Optional[str] = None,
    log_dir: Optional[str] = None,
    app_version: Optional[str] = None
) -> logging.Logger:
    """
    Configure application-wide logging with JSON format.

    Args:
        log_level: Override log level (default from settings.LOG_LEVEL)
        log_dir: When given, also write rotating app.log and error.log files there
        app_version: Application version to include in startup logs

    Returns:
        Root logger configured for the application
    """
    global APP_VERSION

    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)
    if app_version:
        APP_VERSION = app_version

    json_formatter = CustomJsonFormatter('%(timestamp)s %(level)s %(name)s %(message)s')

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(json_formatter)
    _attach_filters(console_handler)
    root_logger.addHandler(console_handler)

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'pushgate.log'),
            maxBytes=100 * 1024 * 1024,  # 100MB
            backupCount=7,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(json_formatter)
        _attach_filters(file_handler)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            os.path.join(log_dir, 'error.log'),
            maxBytes=50 * 1024 * 1024,  # 50MB
            backupCount=5,
            encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(json_formatter)
        _attach_filters(error_handler)
        root_logger.addHandler(error_handler)

    # httpx logs full request URLs, including device tokens in APNS paths
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('hpack').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    return root_logger


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Bind a correlation ID to the current context; returns the reset token."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def clear_correlation_id(token: contextvars.Token) -> None:
    correlation_id_var.reset(token)


def mask_token(token: Optional[str], visible: int = 20) -> str:
    """
    Shorten a device token for logging.

    Device tokens are long-lived identifiers and only the prefix is needed
    to correlate log lines.
    """
    if not token:
        return "<none>"
    if len(token) <= visible:
        return token
    return token[:visible] + "..."
