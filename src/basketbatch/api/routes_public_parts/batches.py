from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request

from basketbatch.api.errors import ApiError
from basketbatch.api.routes_public_parts.common import _amount_param, _engine
from basketbatch.api.schemas import ClaimRequest, ConfirmRequest, DepositRequest, ProcessRequest
from basketbatch.ledger.fixed_point import format_units
from basketbatch.ledger.types import BatchDirection

router = APIRouter()

Json = Dict[str, Any]


def _direction(v: Any) -> BatchDirection:
    try:
        return BatchDirection.parse(v)
    except ValueError as e:
        raise ApiError.bad_request("invalid_direction", str(e), {"direction": str(v)}) from e


@router.get("/v1/batches/current")
def v1_current_batches(request: Request) -> Json:
    eng = _engine(request)
    return {"ok": True, "batches": {d.value: b.to_json() for d, b in eng.current_batches().items()}}


@router.get("/v1/batches/timing")
def v1_batch_timing(request: Request) -> Json:
    eng = _engine(request)
    return {"ok": True, "timing": {d.value: t.to_json() for d, t in eng.timings().items()}}


@router.get("/v1/batches/{batch_id}")
def v1_batch_get(batch_id: str, request: Request) -> Json:
    eng = _engine(request)
    batch = eng.get_batch(batch_id)
    claims = eng.ledger.claims_for(batch.batch_id)
    pending = eng.coordinator.pending(batch.batch_id)
    return {
        "ok": True,
        "batch": batch.to_json(),
        "depositors": len(claims),
        "claimed": sum(1 for c in claims if c.claimed),
        "pending": pending.to_json() if pending is not None else None,
    }


@router.get("/v1/accounts/{account}/batches")
def v1_account_batches(account: str, request: Request) -> Json:
    eng = _engine(request)
    views = eng.account_batches(account)
    return {"ok": True, "account": account, "batches": [v.to_json() for v in views]}


@router.post("/v1/batches/deposit")
def v1_deposit(req: DepositRequest, request: Request) -> Json:
    eng = _engine(request)
    d = _direction(req.direction)
    amount = _amount_param(req.amount, field="amount")
    batch = eng.deposit(d, req.account, amount)
    return {"ok": True, "amount": amount, "batch": batch.to_json()}


@router.post("/v1/batches/{batch_id}/claim")
def v1_claim(batch_id: str, req: ClaimRequest, request: Request) -> Json:
    eng = _engine(request)
    amount = eng.claim(batch_id, req.account)
    return {
        "ok": True,
        "batch_id": batch_id,
        "account": req.account,
        "amount": amount,
        "amount_display": format_units(amount),
    }


@router.post("/v1/batches/process")
def v1_process(req: ProcessRequest, request: Request) -> Json:
    eng = _engine(request)
    d = _direction(req.direction)
    res = eng.process(d, slippage_bps=req.slippage_bps, dry_run=bool(req.dry_run))
    return {"ok": True, **res.to_json()}


@router.post("/v1/batches/{batch_id}/confirm")
def v1_confirm(batch_id: str, req: ConfirmRequest, request: Request) -> Json:
    eng = _engine(request)
    output_total = _amount_param(req.output_total, field="output_total")
    batch = eng.confirm(batch_id, output_total)
    return {"ok": True, "batch": batch.to_json()}
