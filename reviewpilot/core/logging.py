"""
Logging setup for the API and the Celery processes

Owner phone numbers show up in almost every SMS log line, so every handler
masks them down to the last four digits before anything is written.
JSON output is used in production or when USE_JSON_LOGGING is set.
"""
import json
import logging
import re
from datetime import datetime, timezone
from typing import Optional

from reviewpilot.core.config import get_settings

PHONE_PATTERN = re.compile(r"\+\d{7,11}(\d{4})")

# Correlation fields attached through `extra=`
CONTEXT_FIELDS = ("account_id", "review_id", "draft_id", "event_id", "message_sid", "task_id")

QUIET_LOGGERS = ("httpx", "twilio.http_client", "stripe", "sqlalchemy.engine", "celery.redirected")


def mask_phone_numbers(text: str) -> str:
    return PHONE_PATTERN.sub(lambda m: f"+***{m.group(1)}", text)


class PhoneMaskingFilter(logging.Filter):
    """Rewrites E.164 numbers in the rendered message"""

    def filter(self, record):
        message = record.getMessage()
        masked = mask_phone_numbers(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class JsonFormatter(logging.Formatter):

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                entry[field] = getattr(record, field)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(level: Optional[str] = None, json_logs: Optional[bool] = None,
                  service_name: str = "reviewpilot-api") -> logging.Logger:
    """
    Configure the root logger for this process.

    Args:
        level: Log level name, defaults to LOG_LEVEL
        json_logs: Force JSON output on or off, defaults to USE_JSON_LOGGING or production
        service_name: Name stamped on every JSON entry
    """
    settings = get_settings()
    level = (level or settings.log_level).upper()
    numeric_level = getattr(logging, level, logging.INFO)
    if json_logs is None:
        json_logs = settings.use_json_logging or settings.is_production()

    if json_logs:
        formatter = JsonFormatter(service_name)
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler = logging.StreamHandler()
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    handler.addFilter(PhoneMaskingFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def setup_worker_logging() -> logging.Logger:
    return setup_logging(service_name="reviewpilot-worker")
