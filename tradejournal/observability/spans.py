"""
Lightweight trace spans emitted as structured log events.

A span is opened with `start_span(name, **attributes)` and, on exit, emits one
`span.end` JSON log line carrying the span name, status, duration and the
trace id shared by nested spans.
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

from tradejournal.common.logging import TRACE_ID, log_event

logger = logging.getLogger(__name__)

STATUS_UNSET = "UNSET"
STATUS_OK = "OK"
STATUS_ERROR = "ERROR"


def get_trace_id() -> Optional[str]:
    return TRACE_ID.get()


class Span:
    def __init__(self, name: str, *, trace_id: str, parent_id: Optional[str], attributes: Dict[str, Any]) -> None:
        self.name = name
        self.trace_id = trace_id
        self.span_id = uuid.uuid4().hex[:16]
        self.parent_id = parent_id
        self.attributes: Dict[str, Any] = dict(attributes)
        self.status = STATUS_UNSET
        self.status_message: Optional[str] = None
        self.exception_type: Optional[str] = None

    def set_attribute(self, key: str, value: Any) -> None:
        self.attributes[str(key)] = value

    def set_status(self, status: str, message: Optional[str] = None) -> None:
        if status not in (STATUS_UNSET, STATUS_OK, STATUS_ERROR):
            raise ValueError(f"unknown span status: {status!r}")
        self.status = status
        self.status_message = message

    def record_exception(self, exc: BaseException) -> None:
        self.exception_type = type(exc).__name__
        if self.status_message is None:
            self.status_message = str(exc)


_CURRENT_SPAN: ContextVar[Optional[Span]] = ContextVar("current_span", default=None)


@contextmanager
def start_span(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Open a span for the duration of the `with` block.

    An exception escaping the block marks the span ERROR (with the exception
    message) and is re-raised. A block that exits normally without setting a
    status is recorded as OK.
    """
    parent = _CURRENT_SPAN.get()
    trace_id = parent.trace_id if parent is not None else (get_trace_id() or uuid.uuid4().hex)
    span = Span(name, trace_id=trace_id, parent_id=parent.span_id if parent else None, attributes=attributes)

    span_token = _CURRENT_SPAN.set(span)
    trace_token = TRACE_ID.set(trace_id)
    start = time.perf_counter()
    try:
        yield span
    except BaseException as e:
        span.record_exception(e)
        span.set_status(STATUS_ERROR, str(e))
        raise
    finally:
        if span.status == STATUS_UNSET:
            span.set_status(STATUS_OK)
        _CURRENT_SPAN.reset(span_token)
        TRACE_ID.reset(trace_token)
        log_event(
            logger,
            "span.end",
            severity="ERROR" if span.status == STATUS_ERROR else "DEBUG",
            span_name=span.name,
            span_status=span.status,
            span_status_message=span.status_message,
            span_exception_type=span.exception_type,
            duration_ms=int(max(0.0, (time.perf_counter() - start) * 1000.0)),
            trace_id=span.trace_id,
            span_id=span.span_id,
            parent_span_id=span.parent_id,
            attributes=span.attributes,
        )
