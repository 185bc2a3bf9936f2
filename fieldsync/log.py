"""
Logging setup with per-item correlation.

Every record emitted while a batch item is processed carries the vendor,
item type and local_id of that item:

    from fieldsync.log import with_correlation

    with with_correlation(vendor_id=7, item_type="order", local_id="ord_1"):
        logger.info("ingesting")
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class CorrelationContext:
    vendor_id: Optional[int] = None
    item_type: Optional[str] = None
    local_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def merge(self, **kwargs) -> "CorrelationContext":
        data = self.to_dict()
        data.update({k: v for k, v in kwargs.items() if v is not None})
        return CorrelationContext(**data)


_correlation_context: ContextVar[CorrelationContext] = ContextVar(
    "fieldsync_correlation", default=CorrelationContext()
)


def get_correlation_context() -> CorrelationContext:
    return _correlation_context.get()


@contextmanager
def with_correlation(**kwargs):
    new_ctx = get_correlation_context().merge(**kwargs)
    token = _correlation_context.set(new_ctx)
    try:
        yield new_ctx
    finally:
        _correlation_context.reset(token)


class CorrelationFilter(logging.Filter):
    """Copy the active correlation context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation = get_correlation_context().to_dict()
        return True


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(getattr(record, "correlation", {}))
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    2026-01-15 12:00:00 [INFO ] fieldsync.sync [7/order:ord_1]: committed
    """

    def format(self, record: logging.LogRecord) -> str:
        ctx = getattr(record, "correlation", {})
        parts = []
        if "vendor_id" in ctx:
            parts.append(str(ctx["vendor_id"]))
        if "local_id" in ctx:
            parts.append(f"{ctx.get('item_type', 'item')}:{ctx['local_id']}")
        correlation = "/".join(parts) if parts else "-"
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} [{record.levelname:5}] {record.name} [{correlation}]: {record.getMessage()}"
        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


_configured = False


def configure_logging(level: str | int = logging.INFO, json_format: bool = False) -> None:
    global _configured
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())
    handler.addFilter(CorrelationFilter())

    root = logging.getLogger("fieldsync")
    root.setLevel(level.upper() if isinstance(level, str) else level)
    root.addHandler(handler)
    _configured = True
