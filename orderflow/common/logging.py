"""
Structured JSON logging + request ids (stdlib-only).

- One JSON object per log line (stdout)
- Stable core fields: service, env, version, sha, request_id, event_type, severity
- FastAPI middleware that reads/propagates X-Request-ID and emits one
  `http.request` line per request
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
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator, Optional

_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# logging.LogRecord built-ins plus the keys we inject ourselves.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "service",
        "env",
        "version",
        "sha",
        "request_id",
        "event_type",
        "severity",
        "message",
        "timestamp",
    }
)


def _utc_ts() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean_text(v: Any, *, max_len: int = 2000) -> str:
    try:
        s = "" if v is None else str(v)
    except Exception:
        s = ""
    s = s.replace("\n", " ").replace("\r", " ").strip()
    if len(s) > max_len:
        s = s[: max_len - 1] + "…"
    return s


def _env_any(*names: str, default: str = "unknown", max_len: int = 256) -> str:
    for name in names:
        v = os.getenv(name)
        if v is not None and str(v).strip():
            return _clean_text(v, max_len=max_len)
    return default


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


def default_service_name() -> str:
    return _env_any("SERVICE_NAME", "K_SERVICE", default="orderflow", max_len=128)


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


@contextmanager
def bind_request_id(*, request_id: str | None = None) -> Iterator[str]:
    rid = _clean_text(request_id or "", max_len=128) or uuid.uuid4().hex
    token = _REQUEST_ID.set(rid)
    try:
        yield rid
    finally:
        _REQUEST_ID.reset(token)


class JsonLogFormatter(logging.Formatter):
    def __init__(self, *, service: str | None = None, env: str | None = None) -> None:
        super().__init__()
        self._service = _clean_text(service or default_service_name(), max_len=128) or "unknown"
        self._env = _clean_text(env or _env_any("ENV", "ENVIRONMENT", default="unknown"), max_len=64)
        self._version = _env_any("APP_VERSION", "VERSION", "IMAGE_TAG", default="unknown", max_len=128)
        self._sha = _env_any("GIT_SHA", "GITHUB_SHA", "COMMIT_SHA", default="unknown", max_len=64)

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": _utc_ts(),
            "severity": "WARNING" if record.levelname == "WARN" else record.levelname,
            "service": self._service,
            "env": self._env,
            "version": self._version,
            "sha": self._sha,
            "request_id": getattr(record, "request_id", None) or get_request_id(),
            "event_type": _clean_text(getattr(record, "event_type", None) or "log", max_len=128),
            "message": _clean_text(record.getMessage(), max_len=4000),
            "logger": record.name,
        }
        if record.exc_info:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))[-8000:]

        for k, v in record.__dict__.items():
            if k in _RESERVED_ATTRS or k.startswith("_"):
                continue
            payload[k] = _jsonable(v)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def init_structured_logging(*, service: str | None = None, env: str | None = None, level: str | int | None = None) -> None:
    """
    Configure root logging to emit JSON lines to stdout.

    Safe to call multiple times (last call wins).
    """
    lvl = level or os.getenv("LOG_LEVEL", "INFO").upper()
    root = logging.getLogger()
    root.setLevel(lvl)
    root.handlers = []
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(lvl)
    handler.setFormatter(JsonLogFormatter(service=service, env=env))
    root.addHandler(handler)
    logging.captureWarnings(True)

    # Route uvicorn through root so its lines are JSON too.
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        lg = logging.getLogger(name)
        lg.handlers = []
        lg.propagate = True


def log_event(
    logger: logging.Logger,
    event_type: str,
    *,
    severity: str = "INFO",
    message: str | None = None,
    exc_info: Any = None,
    **fields: Any,
) -> None:
    """Emit a semantic event with a stable `event_type`."""
    lvl = getattr(logging, str(severity).upper(), logging.INFO)
    logger.log(lvl, message or event_type, exc_info=exc_info, extra={"event_type": event_type, **fields})


def install_fastapi_request_id_middleware(app: Any) -> None:
    from starlette.requests import Request
    from starlette.responses import Response

    http_logger = logging.getLogger("http")

    @app.middleware("http")
    async def _request_id_mw(request: Request, call_next):  # type: ignore[no-untyped-def]
        incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
        start = time.perf_counter()
        status_code = 500
        with bind_request_id(request_id=incoming) as rid:
            try:
                resp: Response = await call_next(request)
                status_code = int(resp.status_code)
            finally:
                log_event(
                    http_logger,
                    "http.request",
                    method=request.method,
                    path=request.url.path,
                    status_code=status_code,
                    duration_ms=int((time.perf_counter() - start) * 1000.0),
                )
        resp.headers["X-Request-ID"] = rid
        return resp
