"""
Structured logging with request and correlation IDs for the CMS security pipeline.
"""

import json
import logging
import sys
import contextvars
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import structlog
from structlog.stdlib import LoggerFactory


# Context variable for correlation ID
correlation_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'correlation_id', default=None
)

# Context variable for request ID
request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'request_id', default=None
)

REDACTED = "[REDACTED]"

SENSITIVE_FIELDS = {
    'password', 'secret', 'token', 'key', 'credential',
    'authorization', 'cookie', 'session', 'api_key'
}


def redact_sensitive(data: Any, max_depth: int = 16) -> Any:
    """Return a copy of ``data`` with sensitive mapping values masked."""
    if max_depth <= 0:
        return REDACTED
    if isinstance(data, dict):
        sanitized = {}
        for key, value in data.items():
            if any(sensitive in str(key).lower() for sensitive in SENSITIVE_FIELDS):
                sanitized[key] = REDACTED
            else:
                sanitized[key] = redact_sensitive(value, max_depth - 1)
        return sanitized
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, max_depth - 1) for item in data]
    return data


class CorrelationIDProcessor:
    """Processor to add correlation and request IDs to log records."""

    def __call__(self, logger, method_name, event_dict):
        corr_id = correlation_id.get(None)
        if corr_id:
            event_dict['correlation_id'] = corr_id

        req_id = request_id.get(None)
        if req_id:
            event_dict['request_id'] = req_id

        return event_dict


class SecurityProcessor:
    """Processor to sanitize sensitive information from logs."""

    def __call__(self, logger, method_name, event_dict):
        return redact_sensitive(event_dict)


class JSONRenderer:
    """Custom JSON renderer for structured logs."""

    def __call__(self, logger, name, event_dict):
        if 'timestamp' not in event_dict:
            event_dict['timestamp'] = datetime.now(timezone.utc).isoformat()

        event_dict['logger'] = name

        if 'level' in event_dict:
            event_dict['level'] = event_dict['level'].upper()

        return json.dumps(event_dict, default=str, separators=(',', ':'))


class StructuredLogger:
    """Structured logger with request ID support."""

    def __init__(self, name: str):
        self.name = name
        self.logger = structlog.get_logger(name)

    def _log(self, level: str, message: str, **kwargs):
        kwargs.setdefault('component', self.name)
        getattr(self.logger, level)(message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log("debug", message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log("info", message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log("warning", message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log("error", message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log("critical", message, **kwargs)

    def security(self, event: str, **kwargs):
        """Log security events."""
        self._log("warning", f"SECURITY: {event}", event_type="security", **kwargs)


def setup_logging(
    service_name: str,
    level: str = "INFO",
    format_type: str = "json",
    enable_correlation: bool = True,
    logger_levels: Optional[Dict[str, str]] = None,
) -> None:
    """
    Set up structured logging for the service.

    Args:
        service_name: Name of the service
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Format type (json, console)
        enable_correlation: Add request/correlation IDs to every record
        logger_levels: Per-logger level overrides for third-party libraries
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        SecurityProcessor(),
    ]

    if enable_correlation:
        processors.insert(-1, CorrelationIDProcessor())

    if format_type == "json":
        processors.append(JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    for logger_name, logger_level in (logger_levels or {}).items():
        logging.getLogger(logger_name).setLevel(getattr(logging, logger_level.upper()))

    structlog.contextvars.bind_contextvars(service=service_name)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


def bind_request_context(req_id: str, corr_id: Optional[str] = None) -> Tuple[contextvars.Token, contextvars.Token]:
    """Set request and correlation IDs for the current request."""
    return request_id.set(req_id), correlation_id.set(corr_id or req_id)


def reset_request_context(tokens: Tuple[contextvars.Token, contextvars.Token]) -> None:
    """Restore the IDs that were active before ``bind_request_context``."""
    req_token, corr_token = tokens
    request_id.reset(req_token)
    correlation_id.reset(corr_token)


class SecurityLogger:
    """Specialized logger for security events."""

    def __init__(self, service_name: str):
        self.logger = get_logger(f"{service_name}.security")

    def log_input_validation_failure(self, field: str, value_type: str, **kwargs):
        """Log input validation failures."""
        self.logger.security(
            "input_validation_failure",
            field=field,
            value_type=value_type,
            **kwargs
        )
