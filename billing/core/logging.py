import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

from billing.core.config import settings

# Structured keys services pass through `extra=`; anything else stays out of the line.
LOG_CONTEXT_KEYS = (
    "payment_id", "refund_id", "subscription_id", "user_email", "actor",
    "amount", "status", "task", "count", "error", "path", "method",
    "status_code", "breaker_name", "old_state", "new_state", "template",
    "duration_ms", "cache_key",
)


class BillingJsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(
            (key, getattr(record, key))
            for key in LOG_CONTEXT_KEYS
            if getattr(record, key, None) is not None
        )
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, ensure_ascii=False, default=str)


def _handlers() -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(
            RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
            )
        )
    return handlers


def configure_logging() -> None:
    formatter = BillingJsonFormatter()
    handlers = _handlers()
    for handler in handlers:
        handler.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    root.handlers = handlers
