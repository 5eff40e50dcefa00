"""
Structured JSON logging for batch jobs.

Every log line is one JSON object: timestamp, level, logger, the event name
as ``message``, the job-scoped context bound with ``LogContext.bind()`` and
any ``extra=`` fields.  Context fields win over extra fields of the same
name, so a chunk log line always carries the chunk that is being committed.

Job-scoped context fields:
    job_name, job_key, execution_id  -- bound by the coordinator for a run
    chunk_seq                        -- bound per chunk attempt
    correlation_id, partition        -- bound by the orchestrator
"""

__all__ = [
    "JOB_CONTEXT_FIELDS",
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
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Mapping

JOB_CONTEXT_FIELDS: tuple[str, ...] = (
    "job_name",
    "job_key",
    "execution_id",
    "chunk_seq",
    "correlation_id",
    "partition",
)

_EMPTY: Mapping[str, Any] = MappingProxyType({})

_job_context: ContextVar[Mapping[str, Any]] = ContextVar("batch_job_context", default=_EMPTY)


# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------


class LogContext:
    """Job-scoped log fields, isolated per thread and per task."""

    @classmethod
    def bind(cls, **fields: Any) -> "_BoundContext":
        """Overlay ``fields`` for the duration of a ``with`` block.

        None values leave the enclosing binding untouched.

        Raises:
            ValueError: A field is not one of ``JOB_CONTEXT_FIELDS``.
        """
        unknown = sorted(set(fields) - set(JOB_CONTEXT_FIELDS))
        if unknown:
            raise ValueError(f"Unknown log context fields: {unknown}")
        return _BoundContext({k: v for k, v in fields.items() if v is not None})

    @classmethod
    def get_all(cls) -> dict[str, Any]:
        return dict(_job_context.get())

    @classmethod
    def clear(cls) -> None:
        _job_context.set(_EMPTY)


class _BoundContext:
    def __init__(self, fields: dict[str, Any]) -> None:
        self._fields = fields
        self._token: Any = None

    def __enter__(self) -> type[LogContext]:
        merged = {**_job_context.get(), **self._fields}
        self._token = _job_context.set(MappingProxyType(merged))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        _job_context.reset(self._token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    # Decimal amounts as strings
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_job_context.get())

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            code = getattr(exc, "code", None)
            if code is not None:
                payload["exc_code"] = code
            # Context attributes of BatchKernelError subclasses (job_key, chunk_seq...)
            for k, v in vars(exc).items():
                if not k.startswith("_"):
                    payload.setdefault(f"exc_{k}", v)
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------

_LOGGER_PREFIX = "batch_kernel"

_configured = False
_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the batch_kernel namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach one JSON handler to the batch_kernel hierarchy (idempotent)."""
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Drop handlers and allow reconfiguration. FOR TESTING ONLY."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
