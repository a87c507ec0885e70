"""
Structured logging for webhook processing.

- One "loujo" logger; JSON lines in production, key=value lines elsewhere.
- request_id is bound per request through a ContextVar and stamped onto
  every record by a filter.
- Subscription fields (user, provider, event, outcome) passed via `extra=`
  or `log_event` are emitted as top-level keys, as are the free-form
  `extra` values given to `log_event` (a poison message's reason).
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "loujo"
TRUNCATE_AT = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_FIELDS = (
    "request_id",
    "user_id",
    "provider",
    "event_type",
    "event_id",
    "subscription_id",
    "outcome",
    "error_code",
    "status",
    "latency_ms",
)


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    names = _FIELDS + tuple(getattr(record, "extra_keys", ()))
    return {name: getattr(record, name) for name in names if getattr(record, name, None) is not None}


def _timestamp(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


class RequestIdFilter(logging.Filter):
    """Stamp the current request_id onto records that lack one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {"ts": _timestamp(record), "level": record.levelname, "msg": record.getMessage()}
        line.update(_fields(record))
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        pairs = " ".join(f"{k}={v}" for k, v in _fields(record).items())
        line = f"{_timestamp(record)} {record.levelname:<7} {record.getMessage()}"
        if pairs:
            line = f"{line} | {pairs}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> logging.Logger:
    """Install a single stdout handler on the loujo logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers = [handler]
    logger.propagate = True
    return logger


def _truncate(value: Any) -> str:
    text = value if isinstance(value, str) else repr(value)
    if len(text) > TRUNCATE_AT:
        return text[:TRUNCATE_AT] + "...<truncated>"
    return text


def log_event(level: str, msg: str, *, extra: Optional[Dict[str, Any]] = None, **fields: Any) -> None:
    """
    Log one structured event.

    Keyword fields (user_id, provider, event_type, ...) become top-level keys;
    `extra` values are free-form and truncated.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
    payload.setdefault("request_id", get_request_id())
    for key, value in (extra or {}).items():
        payload[key] = _truncate(value)
    # Formatters print these alongside the fixed fields
    payload["extra_keys"] = tuple(k for k in (extra or {}) if k not in _FIELDS)

    logger.log(logging.getLevelName(level.upper()), msg, extra=payload)
