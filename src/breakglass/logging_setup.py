"""Logging for breakglass: text or JSON lines, correlation ids, secret masking.

Every background operation (a bootstrap run, a bulk flush, a ServiceNow
batch) runs inside ``correlation_scope()``, so all log lines it produces,
including those of the httpx calls it makes, share one id.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterator

if TYPE_CHECKING:
    from breakglass.config import Config

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

TEXT_FORMAT = "%(name)s [%(correlation_id)s]: %(message)s"

# Bearer tokens, IAM api keys in form bodies, and basic-auth userinfo in URLs
_SECRET_PATTERNS = [
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"), r"\1***"),
    (re.compile(r"(apikey=)[^&\s]+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(://[^:/\s]+:)[^@/\s]+@"), r"\1***@"),
]


def mask_secrets(text: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class _ContextFilter(logging.Filter):
    """Stamp the correlation id on each record and mask credentials in the message."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get("") or "-"  # type: ignore[attr-defined]
        message = record.getMessage()
        masked = mask_secrets(message)
        if masked != message:
            record.msg, record.args = masked, None
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = getattr(record, "correlation_id", "-")
        if cid and cid != "-":
            payload["correlation_id"] = cid
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(config: "Config") -> None:
    """Configure the root logger from config.logging (format text|json, level)."""
    log_cfg = config.logging
    level = getattr(logging, log_cfg.level.upper(), logging.WARNING)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.addFilter(_ContextFilter())
    if log_cfg.format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)

    # httpx logs full request URLs at INFO
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.ERROR)


@contextmanager
def correlation_scope(operation: str) -> Iterator[str]:
    """Run a block under a fresh ``<operation>-<hex>`` correlation id, restoring the previous one after."""
    cid = f"{operation}-{uuid.uuid4().hex[:12]}"
    token = correlation_id.set(cid)
    try:
        yield cid
    finally:
        correlation_id.reset(token)
