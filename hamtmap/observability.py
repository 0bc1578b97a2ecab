"""
hamtmap Observability

Structured logging for trie and store operations, with correlation IDs and
context propagation.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                 Map / Trie / Store code                  │
    │  logger.debug("msg", cid=x)   @timed_operation(...)      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │                       HamtLogger                         │
    │     layer tags, correlation IDs, structured context      │
    └───────────────────────┬─────────────────────────────────┘
                            │
    ┌───────────────────────▼─────────────────────────────────┐
    │      "hamtmap" stdlib logger: StructuredHandler (json)   │
    │                      or text formatter                   │
    └─────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import contextvars
import functools
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

ROOT_LOGGER_NAME = "hamtmap"

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "correlation_id", default=""
)


class HamtLayer(Enum):
    """Subsystems, used to tag log events."""
    STORE = "store"
    TRIE = "trie"
    MAP = "map"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
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

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs one JSON object per line."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
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

            stream = self.stream or sys.stderr
            stream.write(event.to_json() + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)


_configure_lock = threading.Lock()
_configured = False


def configure_logging(
    level: Optional[str] = None,
    fmt: Optional[str] = None,
    stream: Any = None,
    force: bool = False,
) -> logging.Logger:
    """Attach a handler to the package logger.

    ``level`` and ``fmt`` default to the ``observability`` section of the
    active configuration.
    """
    global _configured
    with _configure_lock:
        root = logging.getLogger(ROOT_LOGGER_NAME)
        if _configured and not force:
            return root

        if level is None or fmt is None:
            from hamtmap.config import get_config
            obs = get_config().observability
            level = level or obs.log_level.get()
            fmt = fmt or obs.log_format.get()

        for handler in list(root.handlers):
            if getattr(handler, "_hamtmap_handler", False):
                root.removeHandler(handler)

        if fmt == "json":
            handler: logging.Handler = StructuredHandler(stream)
        else:
            handler = logging.StreamHandler(stream or sys.stderr)
            handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
            )
        handler._hamtmap_handler = True  # type: ignore[attr-defined]
        root.addHandler(handler)
        root.setLevel(getattr(logging, level.upper()))
        _configured = True
        return root


class HamtLogger:
    """
    Structured logger for hamtmap components.

    Includes the correlation ID and layer in every event; keyword arguments
    become the event's ``context``.
    """

    def __init__(self, name: str, layer: HamtLayer):
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
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)

    def operation(
        self,
        name: str,
        duration_ms: float,
        success: bool = True,
        **context: Any,
    ) -> None:
        """Log an operation completion (debug on success, warning on failure)."""
        level = logging.DEBUG if success else logging.WARNING
        status = "completed" if success else "failed"
        self._log(
            level,
            f"Operation {name} {status}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Set the correlation ID for the current context."""
    return correlation_id_var.set(correlation_id)


def get_correlation_id() -> str:
    """Get the current correlation ID, creating one if unset."""
    cid = correlation_id_var.get()
    if not cid:
        cid = generate_correlation_id()
        correlation_id_var.set(cid)
    return cid


def get_logger(name: str, layer: HamtLayer) -> HamtLogger:
    """Get a logger for a hamtmap component."""
    return HamtLogger(name, layer)


T = TypeVar("T")


def timed_operation(
    logger: HamtLogger,
    operation_name: str,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for timing and logging operations."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            success = True
            try:
                return func(*args, **kwargs)
            except Exception:
                success = False
                raise
            finally:
                duration_ms = (time.monotonic() - start) * 1000
                logger.operation(operation_name, duration_ms, success)
        return wrapper
    return decorator
