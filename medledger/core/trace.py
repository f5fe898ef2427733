from __future__ import annotations

import contextlib
import contextvars
import re
import uuid
from typing import Iterator, Optional

_TRACE_ID: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("medledger.trace_id", default=None)

MAX_TRACE_ID_LEN = 64
_UNSAFE = re.compile(r"[^A-Za-z0-9._:-]")


def new_trace_id() -> str:
    return uuid.uuid4().hex


def accept_trace_id(value: Optional[str]) -> str:
    """
    Inbound trace ids end up in audit lines and log files: keep only a short,
    printable token and fall back to a fresh id.
    """
    cleaned = _UNSAFE.sub("", str(value or ""))[:MAX_TRACE_ID_LEN]
    return cleaned or new_trace_id()


def current_trace_id(default: Optional[str] = None) -> Optional[str]:
    trace_id = _TRACE_ID.get()
    return trace_id if trace_id else default


def resolve_trace_id(trace_id: Optional[str] = None) -> str:
    if trace_id:
        return str(trace_id)
    return current_trace_id() or new_trace_id()


@contextlib.contextmanager
def trace_context(trace_id: Optional[str]) -> Iterator[Optional[str]]:
    """Bind a trace id for the duration of one request or pipeline run."""
    if not trace_id:
        yield current_trace_id()
        return
    token = _TRACE_ID.set(str(trace_id))
    try:
        yield str(trace_id)
    finally:
        _TRACE_ID.reset(token)
