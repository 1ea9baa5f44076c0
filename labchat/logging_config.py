"""Structured stdout logging for labchat.

Every record becomes one JSON line. Patient phone numbers in a record's
`context` are masked down to their last four digits unless
LOG_MASK_PHONES is turned off (local debugging).
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "labchat-api"

# Context keys that carry a patient or staff phone number
PHONE_KEYS = frozenset({"phone", "from_phone", "to", "internal_whatsapp_number"})


def mask_phone(value: Any) -> Any:
    if not isinstance(value, str) or not value:
        return value
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


def mask_context(context: dict) -> dict:
    return {key: mask_phone(value) if key in PHONE_KEYS else value for key, value in context.items()}


class JSONFormatter(logging.Formatter):
    def __init__(self, *, mask_phones: bool = True):
        super().__init__()
        self.mask_phones = mask_phones

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict) and context:
            entry["context"] = mask_context(context) if self.mask_phones else context
        elif context:
            entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO", *, mask_phones: bool = True) -> None:
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(mask_phones=mask_phones))
    root_logger.addHandler(handler)

    # Outbound provider and quickbook calls are logged by the services themselves
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Logger under the `labchat.` namespace, e.g. get_logger("outbox")."""
    return logging.getLogger(f"labchat.{name}")
