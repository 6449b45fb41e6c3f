"""Logging setup driven by LOG_* environment variables."""

import logging
import os
import sys

from pythonjsonlogger import jsonlogger

SERVICE_NAME = "belldesk-backend"

# Client libraries that log every HTTP request or socket frame
NOISY_LOGGERS = ("httpx", "httpcore", "hpack", "websockets", "realtime", "supabase", "postgrest")


class BellDeskJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter that stamps every line with the service and level."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        log_record.setdefault("service", SERVICE_NAME)
        log_record["level"] = record.levelname


class LoggingConfig:
    """Logging settings read once at import."""

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json").lower()
    LOG_MASK_SENSITIVE = os.environ.get("LOG_MASK_SENSITIVE", "true").lower() == "true"
    LOG_SLOW_OPERATION_THRESHOLD_MS = int(os.environ.get("LOG_SLOW_OPERATION_THRESHOLD_MS", "1000"))

    @classmethod
    def level(cls) -> int:
        return getattr(logging, cls.LOG_LEVEL, logging.INFO)

    @classmethod
    def build_formatter(cls) -> logging.Formatter:
        if cls.LOG_FORMAT == "json":
            return BellDeskJsonFormatter("%(name)s %(message)s", timestamp=True)
        return logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")

    @classmethod
    def setup_logging(cls) -> None:
        """Route all records to stdout in the configured format."""
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(cls.level())
        handler.setFormatter(cls.build_formatter())

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        root_logger.addHandler(handler)
        root_logger.setLevel(cls.level())

        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
