from __future__ import annotations

import time
from typing import Any, Optional

from fastapi import APIRouter, Request

router = APIRouter()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _loop_status(loop: Any) -> dict[str, object]:
    if loop is None:
        return {"running": None, "unhealthy": None, "last_error": None, "consecutive_failures": None}
    st = loop.status()
    return {
        "running": bool(st.get("running")),
        "unhealthy": bool(st.get("unhealthy")),
        "last_error": st.get("last_error") or "",
        "consecutive_failures": int(st.get("consecutive_failures") or 0),
    }


def _health_payload(request: Request) -> dict[str, object]:
    # health must never crash; best-effort telemetry only
    eng = getattr(request.app.state, "engine", None)
    current: Optional[dict[str, str]] = None
    if eng is not None:
        current = {d.value: b.batch_id for d, b in eng.current_batches().items()}

    return {
        "ok": True,
        "service": "basketbatch",
        "version": "v1",
        "ts_ms": _now_ms(),
        "engine": {
            "attached": eng is not None,
            "persistent": bool(getattr(eng, "persistent", False)),
            "current_batches": current,
        },
        "settlement_loop": _loop_status(getattr(request.app.state, "settlement_loop", None)),
    }


@router.get("/v1/health")
def v1_health(request: Request) -> dict[str, object]:
    return _health_payload(request)


@router.get("/health")
def health(request: Request) -> dict[str, object]:
    # unversioned alias for ops tooling
    return _health_payload(request)


@router.get("/readyz")
def readyz(request: Request) -> dict[str, object]:
    """Ready only when an engine is attached and the settlement loop (if any) is healthy."""
    eng = getattr(request.app.state, "engine", None)
    loop = _loop_status(getattr(request.app.state, "settlement_loop", None))
    ready = eng is not None and loop.get("unhealthy") is not True
    return {"ok": bool(ready), "service": "basketbatch", "ts_ms": _now_ms(), "settlement_loop": loop}
