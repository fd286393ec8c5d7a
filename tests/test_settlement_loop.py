from __future__ import annotations

import time
from dataclasses import replace
from pathlib import Path

import pytest

from basketbatch.ledger.constants import SCALE
from basketbatch.ledger.types import BatchState
from basketbatch.runtime.engine_boot import build_engine
from basketbatch.runtime.engine_config import default_engine_config
from basketbatch.runtime.errors import RateUnavailable
from basketbatch.runtime.settlement_loop import SettlementLoop, SettlementLoopConfig, settlement_loop_config_from_env


def _loop_cfg(tmp_path: Path, **over) -> SettlementLoopConfig:
    cfg = SettlementLoopConfig(
        interval_ms=250,
        enabled=True,
        lock_path=str(tmp_path / "loop.lock"),
        fail_fast_after=3,
        error_backoff_min_ms=50,
        error_backoff_max_ms=100,
    )
    return replace(cfg, **over)


def _engine():
    return build_engine(replace(default_engine_config(), db_path="", cooldown_seconds=0))


class _BrokenEngine:
    def __init__(self) -> None:
        self.calls = 0

    def process(self, direction):
        self.calls += 1
        raise RateUnavailable("hop_source_unavailable", {"direction": direction.value})


def test_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BASKETBATCH_LOOP_INTERVAL_MS", "5")
    monkeypatch.setenv("BASKETBATCH_LOOP_ENABLED", "0")
    cfg = settlement_loop_config_from_env()
    assert cfg.interval_ms == 250
    assert cfg.enabled is False


def test_tick_skips_empty_batches_quietly(tmp_path: Path) -> None:
    loop = SettlementLoop(engine=_engine(), cfg=_loop_cfg(tmp_path))
    assert loop.tick() is True
    assert loop.last_results == {"mint": "skipped:no_deposits", "redeem": "skipped:no_deposits"}
    assert loop.consecutive_failures == 0


def test_tick_settles_ready_batches(tmp_path: Path) -> None:
    eng = _engine()
    eng.deposit("redeem", "alice", 2 * SCALE)
    loop = SettlementLoop(engine=eng, cfg=_loop_cfg(tmp_path))

    assert loop.tick() is True
    assert loop.last_results["redeem"] == "settled"
    assert eng.get_batch("redeem-1").state is BatchState.SETTLED


def test_price_failures_count_and_clear(tmp_path: Path) -> None:
    loop = SettlementLoop(engine=_BrokenEngine(), cfg=_loop_cfg(tmp_path))
    assert loop.tick() is False
    assert loop.consecutive_failures == 2
    assert loop.last_results["mint"] == "failed:rate_unavailable"
    assert "rate_unavailable" in loop.last_error

    loop._engine = _engine()
    assert loop.tick() is True
    assert loop.consecutive_failures == 0
    assert loop.last_error == ""


def test_background_loop_trips_unhealthy(tmp_path: Path) -> None:
    eng = _BrokenEngine()
    loop = SettlementLoop(engine=eng, cfg=_loop_cfg(tmp_path, fail_fast_after=4))
    assert loop.start() is True

    deadline = time.monotonic() + 10
    while loop.running and time.monotonic() < deadline:
        time.sleep(0.05)

    assert loop.unhealthy is True
    assert loop.status()["running"] is False
    loop.stop()


def test_only_one_loop_holds_the_lock(tmp_path: Path) -> None:
    cfg = _loop_cfg(tmp_path, interval_ms=60_000)
    a = SettlementLoop(engine=_engine(), cfg=cfg)
    b = SettlementLoop(engine=_engine(), cfg=cfg)
    try:
        assert a.start() is True
        assert b.start() is False
    finally:
        a.stop()

    assert b.start() is True
    b.stop()


def test_disabled_loop_does_not_start(tmp_path: Path) -> None:
    loop = SettlementLoop(engine=_engine(), cfg=_loop_cfg(tmp_path, enabled=False))
    assert loop.start() is False
