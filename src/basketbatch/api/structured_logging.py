# src/basketbatch/api/structured_logging.py
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from typing import Any, Dict, Optional, TextIO

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from basketbatch.runtime.event_log import log_event

Json = Dict[str, Any]

# liveness and scrape endpoints, logged at DEBUG
_QUIET_PATHS = frozenset({"/health", "/v1/health", "/readyz", "/metrics", "/v1/metrics", "/v1/metrics/json"})


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line.

    Records produced by log_event() already carry a JSON payload and pass
    through untouched; everything else (uvicorn, plain log.warning calls) is
    wrapped so the stream stays machine-readable.
    """

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if msg.startswith("{") and not record.exc_info:
            return msg
        out: Json = {
            "ts_ms": int(record.created * 1000),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": msg,
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        return json.dumps(out, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_structured_logging(level_name: Optional[str] = None, *, stream: Optional[TextIO] = None) -> None:
    """Route the root logger through JsonLineFormatter.

    Level comes from the argument, else BASKETBATCH_LOG_LEVEL (default INFO).
    Calling it again only changes the level.
    """
    name = (level_name or os.environ.get("BASKETBATCH_LOG_LEVEL") or "INFO").strip().upper()
    level = getattr(logging, name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    if getattr(root, "_basketbatch_configured", False):
        return

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonLineFormatter())
    root.handlers = [handler]
    setattr(root, "_basketbatch_configured", True)

    # RequestLogMiddleware already emits one line per request.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """One `http_request` event per request, tagged with an x-request-id.

    BASKETBATCH_LOG_REQUESTS=0 turns it off; BASKETBATCH_LOG_REQUEST_HEADERS=1
    adds user-agent and forwarding headers.
    """

    _HEADERS = ("user-agent", "content-type", "x-forwarded-for")

    def __init__(self, app) -> None:
        super().__init__(app)
        self._enabled = _flag("BASKETBATCH_LOG_REQUESTS", True)
        self._log_headers = _flag("BASKETBATCH_LOG_REQUEST_HEADERS", False)
        self._logger = logging.getLogger("basketbatch.http")

    def _level_for(self, path: str, status: int) -> int:
        if status >= 500:
            return logging.WARNING
        if path in _QUIET_PATHS:
            return logging.DEBUG
        return logging.INFO

    async def dispatch(self, request: Request, call_next):
        if not self._enabled:
            return await call_next(request)

        started = time.monotonic()
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        path = str(request.url.path or "")

        fields: Json = {"request_id": request_id, "method": request.method, "path": path}
        if self._log_headers:
            fields["headers"] = {k: request.headers[k] for k in self._HEADERS if k in request.headers}

        try:
            response = await call_next(request)
        except Exception as e:
            log_event(
                self._logger,
                "http_request",
                level=logging.ERROR,
                status=500,
                duration_ms=int((time.monotonic() - started) * 1000),
                error=type(e).__name__,
                **fields,
            )
            raise

        status = int(response.status_code)
        # set by the handlers in basketbatch.api.errors
        code = response.headers.get("x-error-code")
        log_event(
            self._logger,
            "http_request",
            level=self._level_for(path, status),
            status=status,
            duration_ms=int((time.monotonic() - started) * 1000),
            error_code=code,
            **fields,
        )
        response.headers.setdefault("x-request-id", request_id)
        return response
