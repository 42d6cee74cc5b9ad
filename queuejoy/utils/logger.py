"""Structured JSON Logging with Correlation ID Support

Bot tokens never reach a log sink: SecretMaskingFilter rewrites any
``bot<id>:<secret>`` URL segment and any configured secret before the
record is formatted.
"""
import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Iterable, Optional

from ..config.settings import settings


correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Lifted from ``extra={...}`` into the JSON record
EXTRA_FIELDS = ("tenant", "ticket_key", "chat_id", "action", "status", "series", "error_code", "details")

_BOT_TOKEN = re.compile(r"\b(bot)?(\d{5,}):([A-Za-z0-9_\-]{20,})")

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "pymongo": logging.WARNING,
    "apscheduler": logging.WARNING,
}


def mask_secret(secret: Optional[str]) -> str:
    """Mask a bot token or key for log output"""
    text = (secret or "").strip()
    if not text:
        return "none"
    if len(text) <= 8:
        return "*" * len(text)
    return f"{text[:4]}...{text[-4:]}"


class SecretMaskingFilter(logging.Filter):
    """Scrubs Telegram bot tokens and the configured secrets from messages"""

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self._secrets = [s for s in secrets if s and len(s) > 8]

    def scrub(self, text: str) -> str:
        text = _BOT_TOKEN.sub(lambda m: f"{m.group(1) or ''}{mask_secret(m.group(2) + ':' + m.group(3))}", text)
        for secret in self._secrets:
            text = text.replace(secret, mask_secret(secret))
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = self.scrub(message)
        if scrubbed != message:
            record.msg, record.args = scrubbed, None
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_obj["correlation_id"] = correlation_id

        for field in EXTRA_FIELDS:
            if hasattr(record, field):
                log_obj[field] = getattr(record, field)

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


def _handler(handler: logging.Handler, masking: SecretMaskingFilter, level: int = logging.NOTSET) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(masking)
    return handler


def _rotating(path: str) -> RotatingFileHandler:
    return RotatingFileHandler(path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8")


def setup_logging() -> None:
    """Install stdout plus rotating app.log / error.log on the root logger"""
    logs_path = settings.logs_path
    os.makedirs(logs_path, exist_ok=True)
    masking = SecretMaskingFilter([settings.bot_token, settings.master_api_key, settings.firebase_auth_token])

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(_handler(logging.StreamHandler(sys.stdout), masking))
    root_logger.addHandler(_handler(_rotating(os.path.join(logs_path, "app.log")), masking))
    root_logger.addHandler(_handler(_rotating(os.path.join(logs_path, "error.log")), masking, logging.ERROR))

    for name, level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_correlation_id(correlation_id: str) -> None:
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()
