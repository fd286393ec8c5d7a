from __future__ import annotations

from fastapi import APIRouter, Response

from basketbatch.api.errors import ApiError
from basketbatch.runtime import metrics as batch_metrics


router = APIRouter()


def _require_enabled() -> None:
    if not batch_metrics.metrics_enabled():
        raise ApiError.not_found("metrics_disabled", "metrics are disabled; set BASKETBATCH_METRICS_ENABLED=1", {})


@router.get("/metrics")
def metrics_text() -> Response:
    """Prometheus exposition of ledger, pricing and settlement-loop counters."""
    _require_enabled()
    return Response(content=batch_metrics.format_prometheus(), media_type="text/plain")


@router.get("/metrics/json")
def metrics_json() -> dict:
    _require_enabled()
    return {"ok": True, **batch_metrics.snapshot()}
