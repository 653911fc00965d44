"""
Structured JSON logging for the escrow release engine.

Every record under the ``escrow_kernel`` logger tree is rendered as one JSON
object per line.  Run-scoped identifiers (run, trigger, deal, earning, actor)
live in context variables so that worker threads started through
``contextvars.copy_context().run`` inherit the fields of the run that
submitted them.

Usage::

    from escrow_kernel.logging_config import LogContext, get_logger

    logger = get_logger("release.transactor")

    with LogContext.bind(run_id=str(run_id), earning_id=str(earning_id)):
        logger.info("earning_released", extra={"amount": str(amount)})
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
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

ROOT_LOGGER_NAME = "escrow_kernel"

_CONTEXT_FIELDS = (
    "correlation_id",
    "run_id",
    "trigger",
    "actor_id",
    "deal_id",
    "earning_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    field: ContextVar(f"escrow_log_{field}", default=None)
    for field in _CONTEXT_FIELDS
}


class LogContext:
    """Run-scoped fields merged into every log record.

    Backed by ``ContextVar`` so values never leak between threads unless
    a context is copied explicitly.
    """

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Assign the given fields; ``None`` values leave a field untouched."""
        for name, value in fields.items():
            var = _context_vars.get(name)
            if var is None:
                raise TypeError(f"Unknown log context field: {name}")
            if value is not None:
                var.set(value)

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {
            name: value
            for name, var in _context_vars.items()
            if (value := var.get()) is not None
        }

    @classmethod
    def clear(cls) -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    @contextmanager
    def bind(**fields: str | None) -> Iterator[type["LogContext"]]:
        """Temporarily set fields; previous values come back on exit.

        Unknown field names and ``None`` values are ignored, which lets
        callers forward a snapshot taken with :meth:`get_all` verbatim.
        """
        tokens = [
            (_context_vars[name], _context_vars[name].set(value))
            for name, value in fields.items()
            if value is not None and name in _context_vars
        ]
        try:
            yield LogContext
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}

# Exception attributes already rendered elsewhere in the payload.
_SKIPPED_EXC_ATTRS = frozenset({"args", "code", "summary"})


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    for attr, value in vars(exc).items():
        if attr.startswith("_") or attr in _SKIPPED_EXC_ATTRS:
            continue
        fields[f"exc_{attr}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """Render a record as a single JSON line.

    Field precedence: envelope (ts, level, logger, message), then the
    active :class:`LogContext`, then ``extra`` keys that do not collide.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }

        for key, value in vars(record).items():
            if key in _RESERVED_RECORD_ATTRS:
                continue
            payload.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Return ``escrow_kernel.<name>``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


_setup_lock = threading.Lock()
_handler_installed = False


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the ``escrow_kernel`` tree.

    Only the first call has an effect until :func:`reset_logging` runs.
    Records do not propagate to the root logger.
    """
    global _handler_installed
    with _setup_lock:
        if _handler_installed:
            return
        _handler_installed = True

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(target)


def reset_logging() -> None:
    """Drop installed handlers so the next configure_logging() applies (tests)."""
    global _handler_installed
    with _setup_lock:
        _handler_installed = False
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
