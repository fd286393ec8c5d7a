from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from basketbatch.api.errors import install_error_handlers
from basketbatch.api.routes_public import public_router
from basketbatch.api.structured_logging import RequestLogMiddleware
from basketbatch.runtime.engine import BatchEngine
from basketbatch.runtime.engine_boot import build_engine as _build_engine
from basketbatch.runtime.engine_config import EngineConfig, load_engine_config
from basketbatch.runtime.settlement_loop import SettlementLoop, settlement_loop_config_from_env

log = logging.getLogger("basketbatch.api")


def build_engine(cfg: EngineConfig) -> BatchEngine:
    """Build the engine for API runtime.

    Tests monkeypatch `basketbatch.api.app.build_engine` without reaching into
    runtime modules.
    """
    return _build_engine(cfg)


def _parse_cors_origins(mode: str) -> List[str]:
    """CORS origins from BASKETBATCH_CORS_ORIGINS.

      - unset/empty -> CORS disabled
      - wildcard "*" is rejected in prod
    """
    raw = os.environ.get("BASKETBATCH_CORS_ORIGINS", "").strip()
    if not raw:
        return []

    origins = [o.strip() for o in raw.split(",") if o.strip()]
    if "*" in origins:
        if mode == "prod":
            raise RuntimeError(
                "Unsafe CORS configuration: wildcard '*' not allowed in production. "
                "Set explicit origins in BASKETBATCH_CORS_ORIGINS."
            )
        return ["*"]
    return origins


def create_app(
    *,
    boot_runtime: bool = True,
    cfg: Optional[EngineConfig] = None,
    engine: Optional[BatchEngine] = None,
) -> FastAPI:
    """Create the FastAPI application.

    boot_runtime:
      - True (default): load config and attach app.state.engine via build_engine()
      - False: attach `engine` if given, else leave app.state.engine unset
    """
    c = cfg or load_engine_config()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        loop = None
        eng = getattr(app.state, "engine", None)
        if c.loop_enabled and eng is not None:
            loop_cfg = replace(settlement_loop_config_from_env(), enabled=True, interval_ms=int(c.loop_interval_ms))
            loop = SettlementLoop(engine=eng, cfg=loop_cfg)
            if not loop.start():
                log.warning("settlement loop not started: lock held by another process")
                loop = None

        app.state.settlement_loop = loop
        yield
        if loop is not None:
            loop.stop()

    if c.mode == "prod":
        app = FastAPI(
            title="Basket Batch Engine API",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
            lifespan=_lifespan,
        )
    else:
        app = FastAPI(title="Basket Batch Engine API", lifespan=_lifespan)

    app.state.cfg = c

    if engine is not None:
        app.state.engine = engine
    elif boot_runtime:
        app.state.engine = build_engine(c)
    else:
        app.state.engine = None

    # attached by lifespan
    app.state.settlement_loop = None

    install_error_handlers(app)

    app.add_middleware(RequestLogMiddleware)

    cors_origins = _parse_cors_origins(c.mode)
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type"],
        )

    app.include_router(public_router)

    return app
