"""
JSON-lines logging for the journal API and the relay consumer.

Every line carries `service`, `env`, `sha`, `severity` and `event_type`, plus
the correlation ids bound in the current context:
- `request_id` (HTTP requests; read from / echoed as X-Request-ID)
- `trace_id` (set by `tradejournal.observability.spans.start_span`)

Semantic events are logged with `log_event(logger, "<event_type>", **fields)`;
the fields land as top-level JSON keys.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator, Optional

REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
TRACE_ID: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)

# Attributes every LogRecord has; anything else on a record came from `extra=`.
_RECORD_ATTRS: frozenset[str] = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}
_CORE_KEYS: frozenset[str] = frozenset(
    {"timestamp", "severity", "service", "env", "sha", "request_id", "trace_id", "event_type", "logger"}
)

_SEVERITY_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def _clean_text(v: Any, *, max_len: int = 2000) -> str:
    s = "" if v is None else str(v)
    s = s.replace("\n", " ").replace("\r", " ").strip()
    if len(s) > max_len:
        s = s[: max_len - 1] + "…"
    return s


def _first_env(*names: str, default: str) -> str:
    for name in names:
        v = (os.getenv(name) or "").strip()
        if v:
            return _clean_text(v, max_len=128)
    return default


def _json_default(v: Any) -> Any:
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, Decimal):
        return float(v)
    if isinstance(v, (set, frozenset, tuple)):
        return list(v)
    return str(v)


def default_service_name() -> str:
    return _first_env("SERVICE_NAME", "K_SERVICE", default="trade-journal")


def get_request_id() -> Optional[str]:
    return REQUEST_ID.get()


@contextmanager
def bind_request_id(*, request_id: str | None = None) -> Iterator[str]:
    """Bind `request_id` (or a fresh one) for the duration of the block."""
    rid = _clean_text(request_id or "", max_len=128) or uuid.uuid4().hex
    token = REQUEST_ID.set(rid)
    try:
        yield rid
    finally:
        REQUEST_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str | None = None, env: str | None = None, sha: str | None = None) -> None:
        super().__init__()
        self._service = _clean_text(service, max_len=128) or default_service_name()
        self._env = _clean_text(env, max_len=64) or _first_env("ENV", "ENVIRONMENT", default="local")
        self._sha = _clean_text(sha, max_len=64) or _first_env("GIT_SHA", "COMMIT_SHA", default="unknown")

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        severity = _SEVERITY_ALIASES.get(record.levelname, record.levelname)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": severity,
            "service": getattr(record, "service", None) or self._service,
            "env": self._env,
            "sha": self._sha,
            "request_id": getattr(record, "request_id", None) or REQUEST_ID.get(),
            "trace_id": getattr(record, "trace_id", None) or TRACE_ID.get(),
            "event_type": _clean_text(getattr(record, "event_type", None), max_len=128) or "log",
            "message": _clean_text(record.getMessage(), max_len=4000),
            "logger": record.name,
        }
        for k, v in record.__dict__.items():
            if k in _RECORD_ATTRS or k in _CORE_KEYS or k.startswith("_"):
                continue
            payload[k] = v

        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def init_structured_logging(
    *,
    service: str | None = None,
    env: str | None = None,
    sha: str | None = None,
    level: str | int | None = None,
) -> None:
    """
    Send all logging to stdout as JSON lines. Last call wins.

    uvicorn's own loggers are re-routed through the root handler so access and
    error lines share the same format.
    """
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter(service=service, env=env, sha=sha))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(lvl)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True
    logging.captureWarnings(True)


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    exc_info: Any = None,
    **fields: Any,
) -> None:
    """
    Log a semantic event with a stable `event_type`.

    `fields` must not reuse LogRecord attribute names (`name`, `message`, ...).
    """
    lvl = logging.getLevelName(_SEVERITY_ALIASES.get(severity.upper(), severity.upper()))
    if not isinstance(lvl, int):
        lvl = logging.INFO
    logger.log(lvl, message or event_type, exc_info=exc_info, extra={"event_type": event_type, **fields})


def install_fastapi_request_id_middleware(app: Any, *, service: str | None = None) -> None:
    """
    Bind a request id per HTTP request (X-Request-ID, else X-Correlation-Id,
    else generated), echo it on the response, and log one `http.request`
    line per request.
    """
    from starlette.requests import Request

    http_logger = logging.getLogger("http")
    svc = _clean_text(service, max_len=128) or default_service_name()

    @app.middleware("http")
    async def _request_id_mw(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
        start = time.perf_counter()
        status_code = 500
        with bind_request_id(request_id=incoming) as rid:
            try:
                resp = await call_next(request)
                status_code = resp.status_code
            finally:
                log_event(
                    http_logger,
                    "http.request",
                    severity="WARNING" if status_code >= 500 else "INFO",
                    service=svc,
                    method=request.method,
                    path=request.url.path,
                    status_code=status_code,
                    duration_ms=int((time.perf_counter() - start) * 1000.0),
                )
        resp.headers["X-Request-ID"] = rid
        return resp
