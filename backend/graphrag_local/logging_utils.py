"""Structured JSON logging bound to the current knowledge base operation.

HTTP requests and engine operations (add, remove, rebuild, query, load)
run inside ``operation_scope``. The scope lives in a ``ContextVar``, so any
record logged below it, from graph rebuilds to persistence, carries the
operation id and name. A nested scope keeps the outer id and reports the
outer name as its parent. The HTTP layer reads and echoes the id through
``X-Request-Id``.
"""

from __future__ import annotations

import contextlib
import json
import logging
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator

REQUEST_ID_HEADER = "X-Request-Id"


@dataclass(frozen=True)
class Operation:
    id: str
    name: str
    parent: str | None = None


_current: ContextVar[Operation | None] = ContextVar("graphrag_operation", default=None)


def current_operation() -> Operation | None:
    return _current.get()


def new_operation_id() -> str:
    return uuid.uuid4().hex


def _utc_now_iso_z() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": _utc_now_iso_z(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        op = current_operation()
        if op is not None:
            base["operation_id"] = op.id
            base["operation"] = op.name

        if record.exc_info:
            base["exc"] = self.formatException(record.exc_info)

        # logger.*(..., extra={"fields": {...}}); never overrides the keys above
        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            for k, v in fields.items():
                if k not in base:
                    base[k] = v

        return json.dumps(base, ensure_ascii=False, default=str)


def configure_json_logging(*, level: int = logging.INFO) -> None:
    """One JSON stream handler for the root logger and uvicorn's loggers."""

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in ["uvicorn", "uvicorn.error", "uvicorn.access"]:
        lg = logging.getLogger(name)
        lg.handlers = [handler]
        lg.setLevel(level)
        lg.propagate = False


@contextlib.contextmanager
def operation_scope(
    *,
    logger: logging.Logger,
    operation: str,
    operation_id: str | None = None,
    **fields: Any,
) -> Iterator[dict[str, Any]]:
    """Run a block as ``operation`` and log its outcome and duration on exit.

    The yielded dict collects extra fields for the closing record. The id is
    ``operation_id`` when given, else the enclosing operation's, else new.
    """

    outer = _current.get()
    oid = (operation_id or "").strip() or (outer.id if outer else new_operation_id())
    op = Operation(id=oid, name=operation, parent=outer.name if outer else None)
    token = _current.set(op)
    extra: dict[str, Any] = dict(fields)
    start = time.perf_counter()
    outcome = "ok"
    try:
        yield extra
    except BaseException as e:
        outcome = "cancelled" if type(e).__name__ == "CancelledError" else "error"
        if outcome == "error":
            extra["error"] = type(e).__name__
        raise
    finally:
        if op.parent is not None:
            extra["parent"] = op.parent
        extra["outcome"] = outcome
        extra["duration_ms"] = round((time.perf_counter() - start) * 1000.0, 3)
        logger.info("operation_done", extra={"fields": extra})
        _current.reset(token)
