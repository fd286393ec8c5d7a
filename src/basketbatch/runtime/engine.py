from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from basketbatch.ledger.state import AccountBatchView, BatchTiming
from basketbatch.ledger.types import Batch, BatchDirection
from basketbatch.runtime.batch_ledger import BatchLedger
from basketbatch.runtime.coordinator import ProcessResult, SettlementCoordinator
from basketbatch.runtime.errors import SlippageExceeded
from basketbatch.runtime.event_log import log_event
from basketbatch.runtime.sqlite_db import SqliteStateStore

Json = Dict[str, Any]

log = logging.getLogger("basketbatch.engine")

ENGINE_STATE_VERSION = 1


class BatchEngine:
    """Ledger + coordinator with write-through persistence.

    Every mutation is followed by a full snapshot write, under one lock, so
    mutations are serialized. If the write fails, memory is rolled back to the
    last snapshot that reached the store, and the error propagates: a caller
    never sees a change that is live in memory but missing on disk. Without a
    store the engine is memory-only.
    """

    def __init__(
        self,
        *,
        ledger: BatchLedger,
        coordinator: SettlementCoordinator,
        store: Optional[SqliteStateStore] = None,
        clock: Callable[[], int] = lambda: int(time.time()),
    ) -> None:
        self.ledger = ledger
        self.coordinator = coordinator
        self._store = store
        self._clock = clock
        self._mutate_lock = threading.RLock()
        self._last_written: Optional[Json] = None
        self.started_at = int(clock())

    @property
    def persistent(self) -> bool:
        return self._store is not None

    # ----------------------------
    # Persistence
    # ----------------------------

    def state_json(self) -> Json:
        return {
            "engine_state_version": ENGINE_STATE_VERSION,
            "ledger": self.ledger.snapshot(),
            "pending": self.coordinator.pending_snapshot(),
        }

    def persist(self) -> None:
        if self._store is None:
            return
        with self._mutate_lock:
            st = self.state_json()
            try:
                self._store.write(st)
            except Exception:
                self._rollback()
                raise
            self._last_written = st

    def _rollback(self) -> None:
        st = self._last_written
        if st is None:
            # nothing written by this process yet; the store holds what we booted from
            st = self._store.read()
        ledger, pending = self.split_state(st)
        self.ledger.restore(ledger)
        self.coordinator.restore_pending(pending)
        current = {d.value: b.batch_id for d, b in self.current_batches().items()}
        log_event(log, "engine_rolled_back", level=logging.WARNING, current=current)

    @staticmethod
    def split_state(st: Json) -> tuple[Json, List[Json]]:
        version = st.get("engine_state_version")
        if version != ENGINE_STATE_VERSION:
            raise ValueError(f"engine_state_version mismatch: have={version!r} want={ENGINE_STATE_VERSION}")
        ledger = st.get("ledger")
        if not isinstance(ledger, dict):
            raise ValueError("engine state is missing the ledger snapshot")
        pending = st.get("pending") or []
        if not isinstance(pending, list):
            raise ValueError("engine state 'pending' must be a list")
        return ledger, pending

    # ----------------------------
    # Mutations
    # ----------------------------

    def deposit(self, direction: Any, account: str, amount: Any) -> Batch:
        with self._mutate_lock:
            out = self.ledger.deposit(direction, account, amount)
            self.persist()
        return out

    def try_freeze(self, direction: Any, now: Optional[int] = None) -> Batch:
        with self._mutate_lock:
            out = self.ledger.try_freeze(direction, now)
            self.persist()
        return out

    def claim(self, batch_id: str, account: str) -> int:
        with self._mutate_lock:
            amount = self.ledger.mark_claimed(batch_id, account)
            self.persist()
        return amount

    def process(
        self,
        direction: Any,
        *,
        now: Optional[int] = None,
        slippage_bps: Optional[int] = None,
        dry_run: bool = False,
    ) -> ProcessResult:
        if dry_run:
            return self.coordinator.process(direction, now=now, slippage_bps=slippage_bps, dry_run=True)

        with self._mutate_lock:
            try:
                res = self.coordinator.process(direction, now=now, slippage_bps=slippage_bps)
            except Exception:
                # a freeze may have happened before pricing failed
                self.persist()
                raise
            self.persist()
        return res

    def confirm(self, batch_id: str, output_total: Any, *, now: Optional[int] = None) -> Batch:
        with self._mutate_lock:
            try:
                out = self.coordinator.confirm(batch_id, output_total, now=now)
            except SlippageExceeded:
                # the rejected submission was dropped
                self.persist()
                raise
            self.persist()
        return out

    # ----------------------------
    # Reads
    # ----------------------------

    def get_batch(self, batch_id: str) -> Batch:
        return self.ledger.get_batch(batch_id)

    def current_batches(self) -> Dict[BatchDirection, Batch]:
        return self.ledger.current_batches()

    def account_batches(self, account: str) -> List[AccountBatchView]:
        return self.ledger.account_batches(account)

    def timings(self, now: Optional[int] = None) -> Dict[BatchDirection, BatchTiming]:
        ts = int(self._clock() if now is None else now)
        return {d: self.ledger.batch_timing(d, ts) for d in BatchDirection}

    def status(self, now: Optional[int] = None) -> Json:
        ts = int(self._clock() if now is None else now)
        current = self.current_batches()
        timings = self.timings(ts)
        return {
            "ok": True,
            "now": ts,
            "persistent": self.persistent,
            "directions": {
                d.value: {
                    "current_batch": current[d].to_json(),
                    "timing": timings[d].to_json(),
                    "frozen": [b.batch_id for b in self.ledger.frozen_batches(d)],
                }
                for d in BatchDirection
            },
            "pending": self.coordinator.pending_snapshot(),
        }

    def log_boot(self) -> None:
        current = self.current_batches()
        log_event(
            log,
            "engine_booted",
            persistent=self.persistent,
            current={d.value: b.batch_id for d, b in current.items()},
        )
