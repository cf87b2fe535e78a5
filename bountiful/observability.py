"""
Bountiful Observability

Structured logging and lightweight tracing for the bounty core and its
collaborators. Every log line carries the correlation id of the life-cycle
operation that produced it, so one submission can be followed from the
builder through assembly to the ledger's verdict.

    ┌───────────────────────────────────────────────────────────┐
    │  builder / validator / orchestrator / in-memory ledger    │
    │  logger.info("msg", token_id=x)    tracer.span(...)       │
    └──────────────┬───────────────────────────┬────────────────┘
                   │ LogRecord + extras        │ Span
    ┌──────────────▼──────────────┐  ┌─────────▼────────────────┐
    │ StructuredHandler (json)    │  │ exporters (callables)    │
    │ or a plain text Formatter   │  │                          │
    └─────────────────────────────┘  └──────────────────────────┘

Correlation, trace and span ids live together in one context variable, so
a span opened inside an orchestrator action inherits that action's
correlation id without any plumbing.
"""

from __future__ import annotations

import contextlib
import contextvars
import functools
import json
import logging
import sys
import threading
import time
import traceback
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar


@dataclass(frozen=True)
class TraceState:
    correlation_id: str = ""
    trace_id: str = ""
    span_id: str = ""


_state: contextvars.ContextVar[TraceState] = contextvars.ContextVar("bountiful_trace", default=TraceState())


class BountyLayer(Enum):
    """Components of the bounty stack, used to tag log events."""
    CONTENT = "content"
    FEES = "fees"
    CODEC = "codec"
    VALIDATOR = "validator"
    BUILDER = "builder"
    DISTRIBUTION = "distribution"
    ORCHESTRATOR = "orchestrator"
    LEDGER = "ledger"
    STORE = "store"
    CONFIG = "config"
    CLI = "cli"


def generate_correlation_id() -> str:
    return f"corr-{uuid.uuid4().hex[:12]}"


def set_correlation_id(correlation_id: str) -> contextvars.Token:
    """Start a correlation scope; hand the token to ``token.var.reset``."""
    return _state.set(TraceState(correlation_id=correlation_id))


def current_trace() -> TraceState:
    return _state.get()


# =============================================================================
# LOGGING
# =============================================================================

# Fields promoted from the keyword context to the top level of an event.
_PROMOTED = ("token_id", "tx_id")


def _event(record: logging.LogRecord) -> Dict[str, Any]:
    state = _state.get()
    context = dict(getattr(record, "context", None) or {})
    event: Dict[str, Any] = {
        "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
        "level": record.levelname.lower(),
        "logger": record.name,
        "message": record.getMessage(),
        "layer": getattr(record, "layer", ""),
        "correlation_id": state.correlation_id,
        "trace_id": state.trace_id,
        "span_id": state.span_id,
        "operation": getattr(record, "operation", ""),
        "duration_ms": getattr(record, "duration_ms", None),
        "error_code": getattr(record, "error_code", ""),
    }
    for key in _PROMOTED:
        if key in context:
            event[key] = context.pop(key)
    event["context"] = context
    if record.exc_info:
        event["exception"] = "".join(traceback.format_exception(*record.exc_info))
    return {k: v for k, v in event.items() if v not in (None, "", {})}


class StructuredHandler(logging.Handler):
    """Writes one JSON object per record."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.stream.write(json.dumps(_event(record), default=str) + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class BountyLogger:
    """
    Structured logger for bounty components.

    Wraps the stdlib logger ``bountiful.<layer>.<name>``. Keyword arguments
    become the event's context; ``operation``, ``duration_ms`` and
    ``error_code`` are first-class fields.
    """

    def __init__(self, name: str, layer: BountyLayer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"bountiful.{layer.value}.{name}")

    @property
    def stdlib(self) -> logging.Logger:
        return self._logger

    def _log(
        self,
        level: int,
        message: str,
        *,
        operation: str = "",
        error_code: str = "",
        duration_ms: Optional[float] = None,
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(
            level,
            message,
            exc_info=exc_info,
            extra={
                "layer": self.layer.value,
                "operation": operation,
                "error_code": error_code,
                "duration_ms": duration_ms,
                "context": context,
            },
        )

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, **context)

    def operation(self, name: str, duration_ms: float, success: bool = True, **context: Any) -> None:
        self._log(
            logging.INFO if success else logging.WARNING,
            f"Operation {name} {'completed' if success else 'failed'}",
            operation=name,
            duration_ms=round(duration_ms, 3),
            **context,
        )


def get_logger(name: str, layer: BountyLayer) -> BountyLogger:
    return BountyLogger(name, layer)


def configure_logging(level: str = "info", fmt: str = "json", stream: Any = None) -> None:
    """Install a single handler on the ``bountiful`` root logger."""
    root = logging.getLogger("bountiful")
    root.setLevel(level.upper())
    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.handlers[:] = [handler]
    root.propagate = False


# =============================================================================
# TRACING
# =============================================================================

@dataclass
class Span:
    """A timed unit of work. ``end_time`` is None while the span is open."""
    name: str
    layer: str
    trace_id: str
    span_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_span_id: str = ""
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None
    status: str = "ok"
    attributes: Dict[str, Any] = field(default_factory=dict)

    @property
    def duration_ms(self) -> float:
        return ((self.end_time or time.monotonic()) - self.start_time) * 1000

    def fail(self, exc: BaseException) -> None:
        self.status = "error"
        self.attributes["status_message"] = str(exc)
        self.attributes["exception_type"] = type(exc).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "layer": self.layer,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_span_id": self.parent_span_id,
            "status": self.status,
            "duration_ms": round(self.duration_ms, 2),
            "attributes": dict(self.attributes),
        }


class Tracer:
    """Opens spans and passes each finished one to the registered exporters."""

    def __init__(self, service_name: str = "bountiful"):
        self.service_name = service_name
        self._exporters: List[Callable[[Span], None]] = []
        self._open: Dict[str, Span] = {}
        self._lock = threading.Lock()

    def add_exporter(self, exporter: Callable[[Span], None]) -> None:
        self._exporters.append(exporter)

    def open_spans(self) -> List[Span]:
        with self._lock:
            return list(self._open.values())

    @contextlib.contextmanager
    def span(self, name: str, layer: BountyLayer, **attributes: Any) -> Iterator[Span]:
        parent = _state.get()
        span = Span(
            name=name,
            layer=layer.value,
            trace_id=parent.trace_id or uuid.uuid4().hex,
            parent_span_id=parent.span_id,
            attributes=attributes,
        )
        with self._lock:
            self._open[span.span_id] = span
        token = _state.set(replace(parent, trace_id=span.trace_id, span_id=span.span_id))
        try:
            yield span
        except BaseException as e:
            span.fail(e)
            raise
        finally:
            _state.reset(token)
            span.end_time = time.monotonic()
            with self._lock:
                self._open.pop(span.span_id, None)
            self._export(span)

    def _export(self, span: Span) -> None:
        for exporter in self._exporters:
            try:
                exporter(span)
            except Exception:
                logging.getLogger("bountiful.observability").debug("span exporter failed", exc_info=True)


_tracer: Optional[Tracer] = None
_tracer_lock = threading.Lock()


def get_tracer() -> Tracer:
    global _tracer
    with _tracer_lock:
        if _tracer is None:
            _tracer = Tracer()
        return _tracer


T = TypeVar("T")


def timed_operation(
    logger: BountyLogger,
    operation_name: Optional[str] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Log the duration and outcome of every call to the decorated function."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = operation_name or func.__name__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            start = time.monotonic()
            ok = False
            try:
                result = func(*args, **kwargs)
                ok = True
                return result
            finally:
                logger.operation(name, (time.monotonic() - start) * 1000, ok)
        return wrapper
    return decorator
