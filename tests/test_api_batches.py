from __future__ import annotations

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from basketbatch.api.app import create_app
from basketbatch.ledger.constants import SCALE
from basketbatch.ledger.fixed_point import parse_units
from basketbatch.runtime.engine_boot import build_engine
from basketbatch.runtime.engine_config import default_engine_config, engine_config_from_dict
from basketbatch.runtime.execution import SimulatedExecutionGateway


def _client(*, cooldown_seconds: int = 0, confirm_immediately: bool = True) -> TestClient:
    cfg = engine_config_from_dict(
        {
            "db_path": "",
            "cooldown_seconds": cooldown_seconds,
            "funding_component_id": "usd",
            "pricing": {"components": {"usd": ["1"], "lp": ["1"]}, "holdings": {"lp": "100"}},
        }
    )
    eng = build_engine(cfg, gateway=SimulatedExecutionGateway(confirm_immediately=confirm_immediately))
    return TestClient(create_app(cfg=cfg, engine=eng))


def test_current_batches_and_timing() -> None:
    with _client() as c:
        r = c.get("/v1/batches/current")
        assert r.status_code == 200
        body = r.json()
        assert body["batches"]["mint"]["batch_id"] == "mint-1"
        assert body["batches"]["redeem"]["state"] == "open"

        t = c.get("/v1/batches/timing").json()["timing"]
        assert set(t) == {"mint", "redeem"}
        assert t["mint"]["seconds_remaining"] == 0


def test_deposit_process_confirm_claim_flow() -> None:
    with _client(confirm_immediately=False) as c:
        r = c.post("/v1/batches/deposit", json={"direction": "mint", "account": "alice", "amount": "750"})
        assert r.status_code == 200
        c.post("/v1/batches/deposit", json={"direction": "mint", "account": "bob", "amount": "250"})

        dry = c.post("/v1/batches/process", json={"direction": "mint", "dry_run": True}).json()
        assert dry["status"] == "dry_run"
        assert dry["quote"]["minimum_output"] == parse_units("9.95")

        sub = c.post("/v1/batches/process", json={"direction": "mint"}).json()
        assert sub["status"] == "submitted"
        assert sub["batch"]["state"] == "frozen"

        detail = c.get("/v1/batches/mint-1").json()
        assert detail["depositors"] == 2
        assert detail["pending"]["minimum_output"] == parse_units("9.95")

        low = c.post("/v1/batches/mint-1/confirm", json={"output_total": "9.9"})
        assert low.status_code == 409
        assert low.json()["error"]["code"] == "slippage_exceeded"

        ok = c.post("/v1/batches/mint-1/confirm", json={"output_total": "9.97"})
        assert ok.status_code == 200
        assert ok.json()["batch"]["state"] == "settled"

        claim = c.post("/v1/batches/mint-1/claim", json={"account": "bob"}).json()
        assert claim["amount"] == parse_units("2.4925")
        assert claim["amount_display"] == "2.4925"

        again = c.post("/v1/batches/mint-1/claim", json={"account": "bob"})
        assert again.status_code == 409
        assert again.json() == {
            "ok": False,
            "error": {
                "code": "already_claimed",
                "message": again.json()["error"]["message"],
                "details": {"batch_id": "mint-1", "account": "bob", "reason": "claim_already_paid"},
            },
        }

        views = c.get("/v1/accounts/alice/batches").json()["batches"]
        assert [v["batch_id"] for v in views] == ["mint-1"]
        assert views[0]["account_supplied"] == 750 * SCALE
        assert views[0]["account_claimable"] == parse_units("7.4775")


@pytest.mark.parametrize(
    "payload,status,code",
    [
        ({"direction": "mint", "account": "alice", "amount": "0"}, 400, "invalid_amount"),
        ({"direction": "mint", "account": "alice", "amount": "lots"}, 400, "invalid_amount"),
        ({"direction": "sideways", "account": "alice", "amount": "1"}, 400, "invalid_direction"),
        ({"direction": "mint", "account": "", "amount": "1"}, 400, "invalid_account"),
    ],
)
def test_deposit_errors(payload: dict, status: int, code: str) -> None:
    with _client() as c:
        r = c.post("/v1/batches/deposit", json=payload)
        assert r.status_code == status
        assert r.json()["ok"] is False
        assert r.json()["error"]["code"] == code


def test_unknown_batch_is_404() -> None:
    with _client() as c:
        r = c.get("/v1/batches/mint-42")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "unknown_batch"


def test_process_errors_map_to_conflict() -> None:
    with _client() as c:
        r = c.post("/v1/batches/process", json={"direction": "redeem"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "empty_batch"

        r = c.post("/v1/batches/process", json={"direction": "redeem", "slippage_bps": 10000})
        assert r.status_code == 400


def test_cooldown_is_409() -> None:
    with _client(cooldown_seconds=3600) as c:
        c.post("/v1/batches/deposit", json={"direction": "redeem", "account": "a", "amount": "1"})
        assert c.post("/v1/batches/process", json={"direction": "redeem"}).json()["status"] == "settled"
        c.post("/v1/batches/deposit", json={"direction": "redeem", "account": "a", "amount": "1"})
        r = c.post("/v1/batches/process", json={"direction": "redeem"})
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "cooldown_active"


def test_price_failure_is_503() -> None:
    cfg = replace(default_engine_config(), db_path="", cooldown_seconds=0)
    eng = build_engine(cfg)
    eng.coordinator._pricer.funding_component_id = "missing"
    with TestClient(create_app(cfg=cfg, engine=eng)) as c:
        c.post("/v1/batches/deposit", json={"direction": "mint", "account": "a", "amount": "1"})
        r = c.post("/v1/batches/process", json={"direction": "mint"})
        assert r.status_code == 503
        assert r.json()["error"]["code"] == "rate_unavailable"


def test_metrics_gated_by_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BASKETBATCH_METRICS_ENABLED", raising=False)
    with _client() as c:
        assert c.get("/v1/metrics").status_code == 404

    monkeypatch.setenv("BASKETBATCH_METRICS_ENABLED", "1")
    with _client() as c:
        c.post("/v1/batches/deposit", json={"direction": "mint", "account": "a", "amount": "1"})
        text = c.get("/v1/metrics").text
        assert "basketbatch_deposits_mint_total" in text
        assert c.get("/v1/metrics/json").json()["counters"]["deposits_mint_total"] >= 1
