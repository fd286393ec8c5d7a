from __future__ import annotations

import sqlite3
from dataclasses import replace
from pathlib import Path

import pytest

from basketbatch.ledger.constants import SCALE
from basketbatch.ledger.fixed_point import parse_units
from basketbatch.ledger.types import BatchDirection, BatchState
from basketbatch.runtime.engine_boot import build_engine
from basketbatch.runtime.engine_config import default_engine_config, engine_config_from_dict
from basketbatch.runtime.errors import InvalidAmount, RateUnavailable, SlippageExceeded
from basketbatch.runtime.execution import SimulatedExecutionGateway
from basketbatch.runtime.sqlite_db import SqliteDB, SqliteStateStore


def _cfg(tmp_path: Path, **over):
    cfg = replace(default_engine_config(), db_path=str(tmp_path / "engine.db"), cooldown_seconds=0)
    return replace(cfg, **over)


def test_engine_restores_ledger_after_restart(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    eng = build_engine(cfg)
    eng.deposit("mint", "alice", 1000 * SCALE)
    eng.deposit("redeem", "bob", 3 * SCALE)
    res = eng.process("mint")
    assert res.status == "settled"

    again = build_engine(cfg)
    assert again.ledger.snapshot() == eng.ledger.snapshot()
    assert again.get_batch("mint-1").state is BatchState.SETTLED
    assert again.current_batches()[BatchDirection.REDEEM].supplied_total == 3 * SCALE
    assert again.claim("mint-1", "alice") == res.batch.output_total


def test_pending_submission_survives_restart(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    eng = build_engine(cfg, gateway=SimulatedExecutionGateway(confirm_immediately=False))
    eng.deposit("mint", "alice", 1000 * SCALE)
    assert eng.process("mint").status == "submitted"

    gw = SimulatedExecutionGateway()
    again = build_engine(cfg, gateway=gw)
    assert again.process("mint").status == "awaiting_confirmation"
    assert gw.submitted == []

    quote_min = again.coordinator.pending("mint-1").minimum_output
    again.confirm("mint-1", quote_min)
    assert build_engine(cfg).get_batch("mint-1").state is BatchState.SETTLED


def test_failed_mutation_writes_nothing(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    eng = build_engine(cfg)
    store = SqliteStateStore(db=SqliteDB(path=cfg.db_path))
    rev = store.revision()

    with pytest.raises(InvalidAmount):
        eng.deposit("mint", "alice", 0)
    assert store.revision() == rev

    eng.deposit("mint", "alice", 1)
    assert store.revision() == rev + 1


def test_freeze_is_persisted_even_when_pricing_fails(tmp_path: Path) -> None:
    raw = {
        "db_path": str(tmp_path / "engine.db"),
        "cooldown_seconds": 0,
        "funding_component_id": "usd",
        "pricing": {
            "components": {"usd": ["1"], "lp": ["1"]},
            # no holdings: the basket has no value
            "holdings": {},
        },
    }
    cfg = engine_config_from_dict(raw)
    eng = build_engine(cfg)
    eng.deposit("mint", "alice", parse_units("5"))
    with pytest.raises(RateUnavailable):
        eng.process("mint")

    again = build_engine(cfg)
    assert again.get_batch("mint-1").state is BatchState.FROZEN
    assert again.current_batches()[BatchDirection.MINT].batch_id == "mint-2"


def test_memory_only_engine(tmp_path: Path) -> None:
    eng = build_engine(_cfg(tmp_path, db_path=""))
    assert eng.persistent is False
    eng.deposit("mint", "alice", SCALE)
    assert not (tmp_path / "engine.db").exists()


def _break_writes(monkeypatch: pytest.MonkeyPatch, eng) -> None:
    def _write(st: dict) -> None:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(eng._store, "write", _write)


def _on_disk(cfg) -> dict:
    return SqliteStateStore(db=SqliteDB(path=cfg.db_path)).read()


def test_failed_write_rolls_deposit_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = _cfg(tmp_path)
    eng = build_engine(cfg)
    eng.deposit("mint", "alice", 5 * SCALE)

    _break_writes(monkeypatch, eng)
    with pytest.raises(sqlite3.OperationalError):
        eng.deposit("mint", "alice", 1000 * SCALE)
    with pytest.raises(sqlite3.OperationalError):
        eng.deposit("mint", "carol", SCALE)

    assert eng.current_batches()[BatchDirection.MINT].supplied_total == 5 * SCALE
    assert [v.batch.batch_id for v in eng.account_batches("carol")] == []
    assert eng.state_json() == _on_disk(cfg)

    monkeypatch.undo()
    eng.deposit("mint", "bob", SCALE)
    assert build_engine(cfg).current_batches()[BatchDirection.MINT].supplied_total == 6 * SCALE


def test_failed_write_rolls_settlement_and_claim_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    cfg = _cfg(tmp_path)
    eng = build_engine(cfg, gateway=SimulatedExecutionGateway(confirm_immediately=False))
    eng.deposit("mint", "alice", 1000 * SCALE)
    assert eng.process("mint").status == "submitted"
    minimum = eng.coordinator.pending("mint-1").minimum_output

    _break_writes(monkeypatch, eng)
    with pytest.raises(sqlite3.OperationalError):
        eng.confirm("mint-1", minimum)
    assert eng.get_batch("mint-1").state is BatchState.FROZEN
    assert eng.coordinator.pending("mint-1") is not None
    assert eng.state_json() == _on_disk(cfg)

    monkeypatch.undo()
    eng.confirm("mint-1", minimum)

    _break_writes(monkeypatch, eng)
    with pytest.raises(sqlite3.OperationalError):
        eng.claim("mint-1", "alice")
    monkeypatch.undo()

    assert eng.claim("mint-1", "alice") == minimum


def test_below_minimum_confirmation_is_persisted(tmp_path: Path) -> None:
    cfg = _cfg(tmp_path)
    eng = build_engine(cfg, gateway=SimulatedExecutionGateway(confirm_immediately=False))
    eng.deposit("mint", "alice", 1000 * SCALE)
    eng.process("mint")
    minimum = eng.coordinator.pending("mint-1").minimum_output

    with pytest.raises(SlippageExceeded):
        eng.confirm("mint-1", minimum - 1)

    again = build_engine(cfg, gateway=SimulatedExecutionGateway(confirm_immediately=False))
    assert again.coordinator.pending("mint-1") is None
    assert again.process("mint").status == "submitted"
