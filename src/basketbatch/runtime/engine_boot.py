# src/basketbatch/runtime/engine_boot.py

from __future__ import annotations

from typing import Optional

from basketbatch.runtime.batch_ledger import BatchLedger
from basketbatch.runtime.coordinator import SettlementCoordinator
from basketbatch.runtime.engine import BatchEngine
from basketbatch.runtime.engine_config import EngineConfig, load_engine_config
from basketbatch.runtime.execution import ExecutionGateway, SimulatedExecutionGateway
from basketbatch.runtime.nav import NavComposer, StaticComposition
from basketbatch.runtime.settlement import SettlementPricer
from basketbatch.runtime.sqlite_db import SqliteDB, SqliteStateStore


def build_gateway(cfg: EngineConfig) -> Optional[ExecutionGateway]:
    if cfg.execution_kind == "simulated":
        return SimulatedExecutionGateway(market_slippage_bps=cfg.market_slippage_bps)
    return None


def build_engine(
    cfg: Optional[EngineConfig] = None,
    *,
    gateway: Optional[ExecutionGateway] = None,
) -> BatchEngine:
    """
    Build a BatchEngine from an explicit config or, if omitted, from
    BASKETBATCH_CONFIG_PATH / defaults.

    With execution_kind="external" a gateway must be passed in; the engine
    never guesses how value is moved.
    """
    c = cfg or load_engine_config()

    gw = gateway or build_gateway(c)
    if gw is None:
        raise ValueError(f"execution_kind={c.execution_kind!r} requires an explicit execution gateway")

    nav = NavComposer(
        c.pricing.build_component_pricing(),
        max_workers=int(c.pricing.max_workers),
        timeout_s=c.pricing.timeout_s,
    )
    pricer = SettlementPricer(
        nav=nav,
        composition=StaticComposition(c.pricing.holdings),
        basket_id=c.basket_id,
        funding_component_id=c.funding_component_id,
    )

    store: Optional[SqliteStateStore] = None
    pending = []
    if c.db_path:
        store = SqliteStateStore(db=SqliteDB(path=c.db_path, mode=c.mode))

    if store is not None and store.exists():
        ledger_snap, pending = BatchEngine.split_state(store.read())
        ledger = BatchLedger.from_snapshot(ledger_snap, cooldown_seconds=c.cooldown_seconds)
    else:
        ledger = BatchLedger(cooldown_seconds=c.cooldown_seconds)

    coordinator = SettlementCoordinator(
        ledger=ledger,
        pricer=pricer,
        gateway=gw,
        slippage_bps=c.slippage_bps,
    )
    coordinator.restore_pending(pending)

    engine = BatchEngine(ledger=ledger, coordinator=coordinator, store=store)
    if store is not None and not store.exists():
        engine.persist()
    engine.log_boot()
    return engine
