"""
Structured logging for the document transition core.

Each component logs through a ``DocLogger`` bound to its layer. Records
leave the ``docstate`` root logger as one JSON object per line carrying the
correlation id of the lifecycle operation that produced them, so every line
written while one document moves through create, price and purchase can be
grouped by that id.

Context values under sensitive keys (entropy, private key material,
passwords) are masked before they reach a handler.
"""

from __future__ import annotations

import contextvars
import json
import logging
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional

ROOT_LOGGER_NAME = "docstate"

SENSITIVE_KEYS = frozenset({"entropy", "private_key", "secret", "wif", "password", "core_password"})

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


class Layer(Enum):
    SCHEMA = "schema"
    IDENTIFIER = "identifier"
    BUILDER = "builder"
    SIGNER = "signer"
    SUBMITTER = "submitter"
    LIFECYCLE = "lifecycle"
    PLATFORM = "platform"
    CONFIG = "config"
    CLI = "cli"


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    return correlation_id_var.set(correlation_id)


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id (a fresh one by default) for the enclosed block."""
    cid = correlation_id or generate_correlation_id()
    token = correlation_id_var.set(cid)
    try:
        yield cid
    finally:
        correlation_id_var.reset(token)


def redact_context(context: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("***" if k.lower() in SENSITIVE_KEYS else v) for k, v in context.items()}


@dataclass
class LogEvent:
    timestamp: str
    level: str
    logger: str
    message: str
    correlation_id: str = ""
    layer: str = ""
    operation: str = ""
    duration_ms: Optional[float] = None
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    @classmethod
    def from_record(cls, record: logging.LogRecord) -> "LogEvent":
        event = cls(
            timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            level=record.levelname.lower(),
            logger=record.name,
            message=record.getMessage(),
            correlation_id=correlation_id_var.get(),
            layer=getattr(record, "layer", ""),
            operation=getattr(record, "operation", ""),
            duration_ms=getattr(record, "duration_ms", None),
            error_code=getattr(record, "error_code", ""),
            context=getattr(record, "context", {}),
        )
        if record.exc_info:
            event.exception = "".join(traceback.format_exception(*record.exc_info))
        return event

    def to_dict(self) -> Dict[str, Any]:
        """Non-empty fields only."""
        return {k: v for k, v in asdict(self).items() if v not in (None, "", {})}


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(LogEvent.from_record(record).to_dict(), default=str)


class StructuredHandler(logging.StreamHandler):
    """JSON lines (``log_format: json``)."""

    def __init__(self, stream: Any = None):
        super().__init__(stream or sys.stderr)
        self.setFormatter(JSONFormatter())


class TextHandler(logging.StreamHandler):
    """Human-readable lines (``log_format: text``)."""

    def __init__(self, stream: Any = None):
        super().__init__(stream or sys.stderr)
        self.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Replace the handler on the ``docstate`` root logger.

    Called once at startup from resolved settings; component loggers
    propagate to it.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for h in list(root.handlers):
        if isinstance(h, (StructuredHandler, TextHandler)):
            root.removeHandler(h)
    root.addHandler(StructuredHandler(stream) if fmt == "json" else TextHandler(stream))
    root.setLevel(getattr(logging, level.upper()))


class DocLogger:
    """Layer-tagged logger; keyword arguments become the event's ``context``."""

    def __init__(self, name: str, layer: Layer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "duration_ms": duration_ms,
            "context": redact_context(context),
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, error_code: str = "", exc_info: bool = False, **context: Any) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        self._log(
            logging.INFO if success else logging.WARNING,
            f"{name} {'completed' if success else 'failed'}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )

    @contextmanager
    def timed(self, name: str, **context: Any) -> Iterator[None]:
        """Emit one ``operation`` record with the block's duration and outcome."""
        start = time.monotonic()
        success = False
        try:
            yield
            success = True
        finally:
            self.operation(name, (time.monotonic() - start) * 1000, success, **context)


def get_logger(name: str, layer: Layer) -> DocLogger:
    return DocLogger(name, layer)
