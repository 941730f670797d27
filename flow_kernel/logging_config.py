"""
flow_kernel.logging_config -- One JSON object per log line.

Responsibility:
    Owns the ``flow_kernel`` logger hierarchy.  Every module obtains its
    logger through ``get_logger("services.x")``; messages are event names
    (``instance_started``, ``job_exhausted``) and structured data travels
    in ``extra={...}``.

Architecture position:
    Kernel -- imported by every layer, imports nothing from the project.

Invariants:
    - Request-scoped fields (tenant, instance, job, actor, correlation,
      trace) live in ContextVars, so worker threads never see each
      other's values.
    - ``configure_logging`` installs exactly one handler no matter how
      often it is called.

Failure modes:
    - Values the JSON encoder cannot handle are rendered with ``str()``;
      formatting never raises.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from enum import Enum
from typing import Any

_LOGGER_PREFIX = "flow_kernel"

CONTEXT_FIELDS = (
    "correlation_id",
    "tenant_id",
    "instance_id",
    "job_id",
    "actor_id",
    "trace_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    field: ContextVar(f"flow_log_{field}", default=None) for field in CONTEXT_FIELDS
}


class LogContext:
    """Request-scoped log fields, merged into every record."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Set fields for the rest of the current context. None is ignored."""
        for name, value in fields.items():
            if value is not None:
                _context_vars[name].set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        return {
            name: value
            for name, var in _context_vars.items()
            if (value := var.get()) is not None
        }

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    def bind(**fields: Any) -> "_BoundContext":
        """
        Set fields for the duration of a ``with`` block.

        Previous values are restored on exit, including when the block
        raises.
        """
        return _BoundContext(fields)


class _BoundContext:

    def __init__(self, fields: dict[str, Any]):
        unknown = set(fields) - set(CONTEXT_FIELDS)
        if unknown:
            raise KeyError(f"Unknown log context field(s): {sorted(unknown)}")
        self._fields = fields
        self._tokens: list[tuple[ContextVar[str | None], Token]] = []

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            if value is not None:
                var = _context_vars[name]
                self._tokens.append((var, var.set(str(value))))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


# Attributes every LogRecord carries; anything else on a record came from
# ``extra``.
_RECORD_ATTRIBUTES: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    # UUID, Decimal and anything else the encoder does not know.
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    # FlowKernelError subclasses keep their structured context as attributes.
    for name, value in vars(exc).items():
        if not name.startswith("_") and name not in ("args", "code"):
            fields[f"exc_{name}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Render a record as ``{ts, level, logger, message, <context>, <extra>}``."""

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(LogContext.get_all())
        line.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES and key not in line
        )
        if record.exc_info and record.exc_info[1] is not None:
            line.update(_exception_fields(record.exc_info[1]))
            line["traceback"] = self.formatException(record.exc_info)
        return json.dumps(line, default=_to_json)


def get_logger(name: str) -> logging.Logger:
    """Return the ``flow_kernel.<name>`` logger."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configure_lock = threading.Lock()
_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach the JSON handler to the ``flow_kernel`` hierarchy once."""
    global _handler
    with _configure_lock:
        if _handler is not None:
            return
        _handler = handler or logging.StreamHandler(stream or sys.stderr)
        _handler.setFormatter(StructuredFormatter())

        root = logging.getLogger(_LOGGER_PREFIX)
        root.setLevel(level)
        root.propagate = False
        root.addHandler(_handler)


def reset_logging() -> None:
    """Detach the handler installed by ``configure_logging``. Tests only."""
    global _handler
    with _configure_lock:
        root = logging.getLogger(_LOGGER_PREFIX)
        if _handler is not None:
            root.removeHandler(_handler)
            _handler = None
        root.setLevel(logging.WARNING)
