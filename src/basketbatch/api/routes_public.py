# src/basketbatch/api/routes_public.py
from __future__ import annotations

from fastapi import APIRouter

from basketbatch.api.routes_public_parts.batches import router as batches_router
from basketbatch.api.routes_public_parts.health import router as health_router
from basketbatch.api.routes_public_parts.metrics import router as metrics_router

public_router = APIRouter()

public_router.include_router(health_router, prefix="", tags=["health"])
public_router.include_router(batches_router, prefix="", tags=["batches"])

# Ops
public_router.include_router(metrics_router, prefix="/v1", tags=["metrics"])
