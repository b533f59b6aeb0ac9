"""
Structured logging for the dairy ledger.

Every record under the ``dairy_ledger`` logger leaves as one JSON object
per line.  Event names are snake_case messages (``allocation_started``,
``payment_state_repaired``); the figures behind them travel as ``extra``
fields, never inside the message text.

Ledger context
--------------
``ReceivablesService`` opens a ``LogContext.operation`` around each
mutating call.  It binds a correlation id, the operation name and the ids
of the payment, invoice or customer involved, so every record logged by
the engine, the tracker or the reversal flow during that call can be
pulled out of a shared log with one filter:

    {"message": "allocation_started", "operation": "allocate",
     "correlation_id": "9f1c...", "payment_id": "...", "requested": "600.00"}

Nested operations (a bulk import recording single payments) keep the
outer correlation id and replace the operation name.

Exceptions
----------
A record logged with ``exc_info`` carries ``exc_type``, ``exc_message``
and a ``traceback``.  For ``DairyLedgerError`` subclasses the error
``code`` and every context attribute (``exc_requested``,
``exc_available``, ...) are added as well.
"""

__all__ = [
    "LEDGER_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping
from uuid import UUID, uuid4

from dairy_ledger.exceptions import DairyLedgerError

LEDGER_FIELDS = ("correlation_id", "operation", "customer_id", "payment_id", "invoice_id")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_context: ContextVar[Mapping[str, str]] = ContextVar("dairy_ledger_log_context", default=_EMPTY)


def _merged(fields: Mapping[str, Any]) -> Mapping[str, str]:
    unknown = sorted(set(fields) - set(LEDGER_FIELDS))
    if unknown:
        raise TypeError(f"unknown log context field(s): {unknown}")
    merged = dict(_context.get())
    merged.update({key: str(value) for key, value in fields.items() if value is not None})
    return MappingProxyType(merged)


class LogContext:
    """Ledger ids attached to every record logged in the current thread or task."""

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def set(**fields: Any) -> None:
        """Set fields until ``clear``; None values are skipped."""
        _context.set(_merged(fields))

    @staticmethod
    def clear() -> None:
        _context.set(_EMPTY)

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Set fields for the duration of the block, then restore the previous ones."""
        token = _context.set(_merged(fields))
        try:
            yield
        finally:
            _context.reset(token)

    @staticmethod
    @contextmanager
    def operation(name: str, **fields: Any) -> Iterator[str]:
        """
        Bind a correlation id and operation name for one ledger operation.

        Yields the correlation id.  Inside another operation the outer id
        is reused.
        """
        correlation_id = _context.get().get("correlation_id") or uuid4().hex
        with LogContext.bind(correlation_id=correlation_id, operation=name, **fields):
            yield correlation_id


# ---------------------------------------------------------------------------
# JSON output
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else on a record came from ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "exc_type": type(exc).__name__,
        "exc_message": str(exc),
    }
    if isinstance(exc, DairyLedgerError):
        fields["exc_code"] = exc.code
        for key, value in vars(exc).items():
            if not key.startswith("_"):
                fields[f"exc_{key}"] = value
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: header, ledger context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context.get())

        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

_ROOT_LOGGER = "dairy_ledger"
_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """Logger ``dairy_ledger.<name>``; it inherits the ledger handler and level."""
    return logging.getLogger(f"{_ROOT_LOGGER}.{name}")


def _is_ledger_handler(handler: logging.Handler) -> bool:
    return getattr(handler, "dairy_ledger_handler", False)


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> logging.Logger:
    """
    Attach the JSON handler to the ``dairy_ledger`` logger.

    Only the first call has an effect; later calls (the CLI after a test
    harness, a second service in the same process) leave the existing
    handler and level in place.
    """
    root = logging.getLogger(_ROOT_LOGGER)
    with _lock:
        if any(_is_ledger_handler(h) for h in root.handlers):
            return root
        handler = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())
        handler.dairy_ledger_handler = True
        root.addHandler(handler)
        root.setLevel(level)
        root.propagate = False
    return root


def reset_logging() -> None:
    """Remove every handler from the ``dairy_ledger`` logger.  For tests."""
    root = logging.getLogger(_ROOT_LOGGER)
    with _lock:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        root.setLevel(logging.WARNING)
