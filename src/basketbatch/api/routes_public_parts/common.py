from __future__ import annotations

import time
from typing import Any

from fastapi import Request

from basketbatch.api.errors import ApiError
from basketbatch.ledger.fixed_point import parse_units
from basketbatch.runtime.engine import BatchEngine


def _engine(request: Request) -> BatchEngine:
    eng = getattr(request.app.state, "engine", None)
    if eng is None:
        raise ApiError.internal("not_ready", "engine not attached to app.state", {})
    return eng


def _now_s() -> int:
    return int(time.time())


def _amount_param(v: Any, *, field: str) -> int:
    """Parse a decimal whole-unit amount into base units."""
    try:
        return parse_units(v)
    except ValueError as e:
        raise ApiError.bad_request("invalid_amount", str(e), {"field": field}) from e
