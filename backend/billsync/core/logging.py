"""Logging setup.

A single module-level ``logger`` is shared by the whole backend. Components that
know more about what they are doing (an organization, a webhook event) derive a
child with ``logger.with_context(...)``; the extra dimensions are attached to
every record the child emits.

Usage:
    from billsync.core.logging import logger

    log = logger.with_context(stripe_event_id=event.id)
    log.info("Processing webhook event")
"""

import json
import logging
import sys
from typing import Any, MutableMapping

from billsync.core.config import settings
from billsync.core.config.enums import Environment


class ContextualLogger(logging.LoggerAdapter):
    """Logger adapter carrying a dict of context dimensions."""

    def __init__(self, logger: logging.Logger, dimensions: dict[str, Any] | None = None):
        """Wrap a stdlib logger with the given dimensions."""
        super().__init__(logger, dimensions or {})
        self.dimensions: dict[str, Any] = dict(dimensions or {})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping]:
        """Merge the bound dimensions into the record's ``extra``."""
        extra = dict(self.dimensions)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = {"dimensions": extra}
        return msg, kwargs

    def with_context(self, **dimensions: Any) -> "ContextualLogger":
        """Return a child logger with additional dimensions bound."""
        merged = {**self.dimensions, **{k: v for k, v in dimensions.items() if v is not None}}
        return ContextualLogger(self.logger, merged)


class _TextFormatter(logging.Formatter):
    """Human-readable formatter for local development."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        dims = getattr(record, "dimensions", None)
        if dims:
            rendered = " ".join(f"{k}={v}" for k, v in dims.items())
            return f"{base} [{rendered}]"
        return base


class _JSONFormatter(logging.Formatter):
    """One JSON object per line, for log aggregation in deployed environments."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(getattr(record, "dimensions", None) or {})
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _configure_root() -> logging.Logger:
    base = logging.getLogger("billsync")
    if base.handlers:
        return base

    handler = logging.StreamHandler(sys.stdout)
    if settings.ENVIRONMENT in (Environment.LOCAL, Environment.TEST):
        handler.setFormatter(_TextFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(_JSONFormatter())

    base.addHandler(handler)
    base.setLevel(settings.LOG_LEVEL.upper())
    base.propagate = False
    return base


logger = ContextualLogger(_configure_root())
