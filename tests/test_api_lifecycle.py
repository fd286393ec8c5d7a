from __future__ import annotations

from dataclasses import replace
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from basketbatch.runtime.engine_config import default_engine_config


def _cfg(**over):
    return replace(default_engine_config(), db_path="", **over)


def test_create_app_boot_runtime_false_does_not_attach_engine() -> None:
    from basketbatch.api.app import create_app

    app = create_app(boot_runtime=False, cfg=_cfg())
    assert getattr(app.state, "engine", None) is None

    # App should still be startable for route/middleware tests.
    with TestClient(app) as client:
        r = client.get("/v1/batches/current")
        assert r.status_code == 500
        assert r.json()["error"]["code"] == "not_ready"
        assert client.get("/health").json()["engine"]["attached"] is False


def test_create_app_boot_runtime_true_attaches_engine(monkeypatch: pytest.MonkeyPatch) -> None:
    from basketbatch.api import app as api_app

    built = []

    def _fake_build_engine(cfg):
        built.append(cfg)
        return SimpleNamespace(persistent=False, current_batches=lambda: {})

    monkeypatch.setattr(api_app, "build_engine", _fake_build_engine)

    app = api_app.create_app(boot_runtime=True, cfg=_cfg())
    assert getattr(app.state, "engine", None) is not None
    assert len(built) == 1

    with TestClient(app) as _client:
        pass


def test_docs_are_disabled_in_prod() -> None:
    from basketbatch.api.app import create_app

    app = create_app(boot_runtime=False, cfg=_cfg(mode="prod", execution_kind="external"))
    with TestClient(app) as client:
        assert client.get("/docs").status_code == 404


def test_wildcard_cors_is_refused_in_prod(monkeypatch: pytest.MonkeyPatch) -> None:
    from basketbatch.api.app import create_app

    monkeypatch.setenv("BASKETBATCH_CORS_ORIGINS", "*")
    with pytest.raises(RuntimeError):
        create_app(boot_runtime=False, cfg=_cfg(mode="prod", execution_kind="external"))


def test_settlement_loop_starts_with_app(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    from basketbatch.api.app import create_app
    from basketbatch.runtime.engine_boot import build_engine

    monkeypatch.setenv("BASKETBATCH_LOOP_LOCK_PATH", str(tmp_path / "loop.lock"))
    cfg = _cfg(loop_enabled=True, loop_interval_ms=60_000)
    app = create_app(cfg=cfg, engine=build_engine(cfg))

    with TestClient(app) as client:
        loop = app.state.settlement_loop
        assert loop is not None and loop.started
        assert client.get("/readyz").json()["ok"] is True
    assert app.state.settlement_loop.started is False
