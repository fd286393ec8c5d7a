from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from basketbatch.runtime.errors import (
    BatchError,
    CooldownActive,
    EmptyBatch,
    InvalidState,
    RateUnavailable,
    Rejected,
    SlippageExceeded,
    SourceUnavailable,
    UnknownBatch,
)

log = logging.getLogger("basketbatch.http")


@dataclass(eq=False)
class ApiError(Exception):
    # not frozen: frameworks reassign __traceback__ while the error propagates
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def conflict(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(409, code, message, details or {})

    @staticmethod
    def unavailable(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(503, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_json(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": dict(self.details)}}


def api_error_from_batch_error(err: BatchError) -> ApiError:
    details = dict(err.details)
    details.setdefault("reason", err.reason)
    if isinstance(err, UnknownBatch):
        return ApiError.not_found(err.code, str(err), details)
    if isinstance(err, (SourceUnavailable, RateUnavailable, Rejected)):
        return ApiError.unavailable(err.code, str(err), details)
    if isinstance(err, (InvalidState, CooldownActive, EmptyBatch, SlippageExceeded)):
        return ApiError.conflict(err.code, str(err), details)
    return ApiError.bad_request(err.code, str(err), details)


def _error_response(err: ApiError) -> JSONResponse:
    return JSONResponse(status_code=err.status_code, content=err.to_json(), headers={"x-error-code": err.code})


async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return _error_response(exc)


async def _batch_error_handler(request: Request, exc: BatchError) -> JSONResponse:
    api_err = api_error_from_batch_error(exc)
    if api_err.status_code >= 500:
        log.warning("batch request failed: %s", exc)
    return _error_response(api_err)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, _api_error_handler)
    app.add_exception_handler(BatchError, _batch_error_handler)
