"""Structured logging: correlation and hotel context, PII masking and operation timing."""

import asyncio
import hashlib
import logging
import re
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional

from src.utils.logging_config import LoggingConfig, get_logger

_correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_hotel_id_var: ContextVar[Optional[str]] = ContextVar("hotel_id", default=None)

# Attributes every LogRecord already has; extra fields must not overwrite them
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

_REDACTIONS = (
    (re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE), "[REDACTED_EMAIL]"),
    (re.compile(r"\b\+?\d[\d\s().-]{7,}\b"), "[REDACTED_PHONE]"),
    (re.compile(r"(?i)(api[_-]?key|token|secret|password|auth)[\s:=]+([A-Za-z0-9_.-]{20,})"), r"\1=[REDACTED]"),
)


def generate_correlation_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def get_correlation_id() -> Optional[str]:
    return _correlation_id_var.get()


def get_hotel_id() -> Optional[str]:
    """Hotel bound to the current context, if any."""
    return _hotel_id_var.get()


@contextmanager
def correlation_context(correlation_id: Optional[str] = None, hotel_id: Optional[str] = None):
    """
    Bind a correlation ID (and optionally a hotel) to every log line in the block.

    Nested blocks restore the outer values on exit.
    """
    correlation_id = correlation_id or generate_correlation_id()
    correlation_token = _correlation_id_var.set(correlation_id)
    hotel_token = _hotel_id_var.set(hotel_id) if hotel_id is not None else None
    try:
        yield correlation_id
    finally:
        if hotel_token is not None:
            _hotel_id_var.reset(hotel_token)
        _correlation_id_var.reset(correlation_token)


def mask_sensitive_data(text: str) -> str:
    """Redact emails, phone numbers and tokens from free text."""
    if not text or not LoggingConfig.LOG_MASK_SENSITIVE:
        return text
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


def mask_user_id(user_id: Optional[str]) -> Optional[str]:
    """Shorten long user IDs to a prefix plus a hash fragment."""
    if not LoggingConfig.LOG_MASK_SENSITIVE or not user_id or len(user_id) <= 12:
        return user_id
    digest = hashlib.sha256(user_id.encode()).hexdigest()[:8]
    return f"{user_id[:4]}...{digest}"


def mask_guest_name(guest_name: Optional[str]) -> Optional[str]:
    """Reduce a guest name to initials, e.g. "John Smith" -> "J. S."."""
    if not LoggingConfig.LOG_MASK_SENSITIVE or not guest_name:
        return guest_name

    parts = [p for p in re.split(r"[\s.]+", guest_name) if p]
    return " ".join(f"{p[0].upper()}." for p in parts) or None


class StructuredLogger:
    """Logger taking keyword fields, which land as extra attributes on the record."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def _get_extra(self, **fields: Any) -> Dict[str, Any]:
        extra: Dict[str, Any] = {"timestamp": datetime.now(timezone.utc).isoformat()}

        correlation_id = get_correlation_id()
        if correlation_id:
            extra["correlation_id"] = correlation_id
        hotel_id = get_hotel_id()
        if hotel_id:
            extra["hotel_id"] = hotel_id

        for key, value in fields.items():
            extra[f"field_{key}" if key in _RECORD_ATTRS else key] = value
        return extra

    def _log(self, level: int, message: str, exc_info: bool = False, **fields: Any) -> None:
        if self.logger.isEnabledFor(level):
            self.logger.log(level, message, extra=self._get_extra(**fields), exc_info=exc_info)

    def debug(self, message: str, **fields: Any) -> None:
        self._log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self._log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self._log(logging.WARNING, message, **fields)

    def error(self, message: str, exc_info: bool = False, **fields: Any) -> None:
        self._log(logging.ERROR, message, exc_info=exc_info, **fields)

    def exception(self, message: str, **fields: Any) -> None:
        self._log(logging.ERROR, message, exc_info=True, **fields)


def get_structured_logger(name: str) -> StructuredLogger:
    return StructuredLogger(get_logger(name))


@contextmanager
def log_timing(operation_name: str, logger: Optional[StructuredLogger] = None, **context: Any):
    """Log how long the block took; warn when it crosses LOG_SLOW_OPERATION_THRESHOLD_MS."""
    log = logger or get_structured_logger(__name__)
    started = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        threshold = LoggingConfig.LOG_SLOW_OPERATION_THRESHOLD_MS
        if elapsed_ms > threshold:
            log.warning(
                f"Slow operation: {operation_name}",
                operation=operation_name,
                processing_time_ms=elapsed_ms,
                threshold_ms=threshold,
                **context
            )
        else:
            log.debug(
                f"Completed {operation_name}",
                operation=operation_name,
                processing_time_ms=elapsed_ms,
                **context
            )


def timed(operation_name: Optional[str] = None, logger: Optional[StructuredLogger] = None):
    """Decorator form of log_timing for sync and async callables."""
    def decorator(func: Callable) -> Callable:
        name = operation_name or f"{func.__module__}.{func.__qualname__}"
        log = logger or get_structured_logger(func.__module__)

        if asyncio.iscoroutinefunction(func):
            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                with log_timing(name, logger=log):
                    return await func(*args, **kwargs)
            return async_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            with log_timing(name, logger=log):
                return func(*args, **kwargs)
        return sync_wrapper

    return decorator


def setup_logging() -> logging.Logger:
    """Configure handlers from LOG_* settings and return the package logger."""
    LoggingConfig.setup_logging()
    return get_logger("src")
