# src/basketbatch/runtime/batch_ledger.py
from __future__ import annotations

"""Batch ledger: owns Batch and AccountClaim records.

State machine per batch:

    OPEN --try_freeze--> FROZEN --settle--> SETTLED (terminal, claims payable)

A new OPEN batch for the same direction is created in the same critical
section that freezes the previous one, so deposits never observe a direction
without an open batch.

Locking:
  - one lock per direction: open-batch pointer, deposits, freezing, cooldown
  - one lock per batch: settle and claims
  - lock order is always direction -> batch -> registry
Rejected operations raise before mutating anything.
"""

import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from basketbatch.ledger.constants import DEFAULT_COOLDOWN_SECONDS
from basketbatch.ledger.fixed_point import require_int
from basketbatch.ledger.state import AccountBatchView, BatchTiming
from basketbatch.ledger.types import (
    AccountClaim,
    Batch,
    BatchDirection,
    BatchState,
    CooldownState,
    make_batch_id,
)
from basketbatch.runtime import claims
from basketbatch.runtime.errors import (
    AlreadySettled,
    CooldownActive,
    EmptyBatch,
    InvalidAccount,
    InvalidAmount,
    InvalidState,
    UnknownBatch,
)
from basketbatch.runtime.event_log import log_event
from basketbatch.runtime.metrics import inc_counter, set_gauge

Json = Dict[str, Any]

SNAPSHOT_VERSION = 1

log = logging.getLogger("basketbatch.ledger")


def _now_s() -> int:
    return int(time.time())


def _positive_amount(v: Any, *, field: str) -> int:
    try:
        amount = require_int(v, field=field)
    except TypeError as e:
        raise InvalidAmount("amount_not_integer", {"field": field, "type": type(v).__name__}) from e
    if amount <= 0:
        raise InvalidAmount("amount_must_be_positive", {"field": field, "amount": amount})
    return amount


def _non_negative(v: Any, *, field: str) -> int:
    try:
        amount = require_int(v, field=field)
    except TypeError as e:
        raise InvalidAmount("amount_not_integer", {"field": field, "type": type(v).__name__}) from e
    if amount < 0:
        raise InvalidAmount("amount_must_be_non_negative", {"field": field, "amount": amount})
    return amount


class BatchLedger:
    def __init__(
        self,
        *,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], int] = _now_s,
        _restore: Optional[Json] = None,
    ) -> None:
        self._clock = clock
        self._registry_lock = threading.Lock()
        self._direction_locks: Dict[BatchDirection, threading.RLock] = {d: threading.RLock() for d in BatchDirection}
        self._batch_locks: Dict[str, threading.Lock] = {}

        self._batches: Dict[str, Batch] = {}
        self._claims: Dict[str, Dict[str, AccountClaim]] = {}
        self._account_index: Dict[str, List[str]] = {}
        self._current: Dict[BatchDirection, str] = {}
        self._next_seq: Dict[BatchDirection, int] = {d: 1 for d in BatchDirection}
        self._cooldowns: Dict[BatchDirection, CooldownState] = {
            d: CooldownState(direction=d, last_settled_at=0, cooldown_duration=int(cooldown_seconds))
            for d in BatchDirection
        }

        if _restore is not None:
            self._load_snapshot(_restore, cooldown_seconds=int(cooldown_seconds))

        now = int(self._clock())
        for d in BatchDirection:
            if d not in self._current:
                self._open_new_batch(d, now)

    # ----------------------------
    # Internals
    # ----------------------------

    def _open_new_batch(self, direction: BatchDirection, now: int) -> Batch:
        seq = self._next_seq[direction]
        self._next_seq[direction] = seq + 1
        b = Batch(batch_id=make_batch_id(direction, seq), direction=direction, seq=seq, created_at=int(now))
        with self._registry_lock:
            self._batches[b.batch_id] = b
            self._claims[b.batch_id] = {}
            self._batch_locks[b.batch_id] = threading.Lock()
            self._current[direction] = b.batch_id
        set_gauge(f"open_batch_supplied_{direction.value}", 0)
        log_event(log, "batch_opened", level=logging.DEBUG, batch_id=b.batch_id, direction=direction.value)
        return b

    def _lookup(self, batch_id: str) -> Batch:
        with self._registry_lock:
            b = self._batches.get(str(batch_id))
        if b is None:
            raise UnknownBatch("batch_not_found", {"batch_id": str(batch_id)})
        return b

    def _batch_lock(self, batch_id: str) -> threading.Lock:
        with self._registry_lock:
            lk = self._batch_locks.get(str(batch_id))
        if lk is None:
            raise UnknownBatch("batch_not_found", {"batch_id": str(batch_id)})
        return lk

    def _pending_settlement(self, direction: BatchDirection) -> List[str]:
        with self._registry_lock:
            return [
                b.batch_id
                for b in self._batches.values()
                if b.direction is direction and b.state is BatchState.FROZEN
            ]

    # ----------------------------
    # Mutations
    # ----------------------------

    def deposit(self, direction: Any, account: str, amount: Any) -> Batch:
        d = BatchDirection.parse(direction)
        acct = str(account or "").strip()
        if not acct:
            raise InvalidAccount("missing_account", {"direction": d.value})
        amt = _positive_amount(amount, field="amount")

        with self._direction_locks[d]:
            batch = self._lookup(self._current[d])
            with self._batch_lock(batch.batch_id):
                if batch.state is not BatchState.OPEN:
                    raise InvalidState("batch_not_open", {"batch_id": batch.batch_id, "state": batch.state.value})

                batch_claims = self._claims[batch.batch_id]
                claim = batch_claims.get(acct)
                if claim is None:
                    claim = AccountClaim(batch_id=batch.batch_id, account=acct)
                    batch_claims[acct] = claim
                    with self._registry_lock:
                        self._account_index.setdefault(acct, []).append(batch.batch_id)

                claim.deposit_amount += amt
                batch.supplied_total += amt
                batch.unclaimed_shares += amt
                out = batch.copy()

        inc_counter(f"deposits_{d.value}_total", 1)
        set_gauge(f"open_batch_supplied_{d.value}", out.supplied_total)
        log_event(
            log,
            "batch_deposit",
            batch_id=out.batch_id,
            account=acct,
            amount=amt,
            supplied_total=out.supplied_total,
        )
        return out

    def try_freeze(self, direction: Any, now: Optional[int] = None) -> Batch:
        """OPEN -> FROZEN for the current batch of `direction`.

        Raises CooldownActive / EmptyBatch (both recoverable) without mutating.
        Returns the frozen batch; a fresh open batch is already in place.
        """
        d = BatchDirection.parse(direction)
        ts = int(self._clock() if now is None else now)

        with self._direction_locks[d]:
            batch = self._lookup(self._current[d])
            cd = self._cooldowns[d]

            pending = self._pending_settlement(d)
            if pending:
                inc_counter("freeze_skipped_total", 1)
                raise CooldownActive("settlement_pending", {"direction": d.value, "pending": pending})

            if not cd.elapsed(ts):
                inc_counter("freeze_skipped_total", 1)
                raise CooldownActive(
                    "cooldown_not_elapsed",
                    {
                        "direction": d.value,
                        "next_eligible_at": cd.next_eligible_at,
                        "seconds_remaining": cd.next_eligible_at - ts,
                    },
                )

            with self._batch_lock(batch.batch_id):
                if batch.supplied_total <= 0:
                    inc_counter("freeze_skipped_total", 1)
                    raise EmptyBatch("no_deposits", {"batch_id": batch.batch_id})
                batch.state = BatchState.FROZEN
                batch.frozen_at = ts
                out = batch.copy()

            self._open_new_batch(d, ts)

        inc_counter(f"freezes_{d.value}_total", 1)
        log_event(log, "batch_frozen", batch_id=out.batch_id, supplied_total=out.supplied_total, frozen_at=ts)
        return out

    def settle(
        self,
        batch_id: str,
        output_total: Any,
        settlement_rate: Any,
        now: Optional[int] = None,
    ) -> Batch:
        """FROZEN -> SETTLED exactly once. Also restarts the direction's cooldown."""
        out_total = _non_negative(output_total, field="output_total")
        rate = _non_negative(settlement_rate, field="settlement_rate")
        ts = int(self._clock() if now is None else now)

        batch = self._lookup(batch_id)
        d = batch.direction

        with self._direction_locks[d]:
            with self._batch_lock(batch.batch_id):
                if batch.state is BatchState.SETTLED:
                    raise AlreadySettled("batch_already_settled", {"batch_id": batch.batch_id})
                if batch.state is not BatchState.FROZEN:
                    raise InvalidState("batch_not_frozen", {"batch_id": batch.batch_id, "state": batch.state.value})

                batch.output_total = out_total
                batch.settlement_rate = rate
                batch.settled_at = ts
                batch.state = BatchState.SETTLED
                out = batch.copy()

            cd = self._cooldowns[d]
            self._cooldowns[d] = CooldownState(
                direction=d, last_settled_at=ts, cooldown_duration=cd.cooldown_duration
            )

        inc_counter(f"settlements_{d.value}_total", 1)
        log_event(
            log,
            "batch_settled",
            batch_id=out.batch_id,
            supplied_total=out.supplied_total,
            output_total=out_total,
            settlement_rate=rate,
            settled_at=ts,
        )
        return out

    def mark_claimed(self, batch_id: str, account: str) -> int:
        """Pay an account's share of a settled batch. Returns the amount paid."""
        acct = str(account or "").strip()
        batch = self._lookup(batch_id)

        with self._batch_lock(batch.batch_id):
            claim = self._claims[batch.batch_id].get(acct)
            if claim is None:
                raise InvalidAccount("no_claim_for_account", {"batch_id": batch.batch_id, "account": acct})

            amount = claims.claimable_amount(batch, claim)
            paid = claims.mark_claimed(claim, amount)

            self._claims[batch.batch_id][acct] = paid
            batch.unclaimed_shares -= paid.deposit_amount

        inc_counter("claims_total", 1)
        log_event(log, "batch_claimed", batch_id=batch.batch_id, account=acct, amount=amount)
        return amount

    # ----------------------------
    # Reads
    # ----------------------------

    def get_batch(self, batch_id: str) -> Batch:
        batch = self._lookup(batch_id)
        with self._batch_lock(batch.batch_id):
            return batch.copy()

    def current_batch_id(self, direction: Any) -> str:
        d = BatchDirection.parse(direction)
        with self._registry_lock:
            return self._current[d]

    def current_batch(self, direction: Any) -> Batch:
        return self.get_batch(self.current_batch_id(direction))

    def current_batches(self) -> Dict[BatchDirection, Batch]:
        return {d: self.current_batch(d) for d in BatchDirection}

    def frozen_batches(self, direction: Any) -> List[Batch]:
        d = BatchDirection.parse(direction)
        return [self.get_batch(bid) for bid in self._pending_settlement(d)]

    def get_claim(self, batch_id: str, account: str) -> Optional[AccountClaim]:
        batch = self._lookup(batch_id)
        with self._batch_lock(batch.batch_id):
            c = self._claims[batch.batch_id].get(str(account or "").strip())
            return c.copy() if c is not None else None

    def claims_for(self, batch_id: str) -> List[AccountClaim]:
        batch = self._lookup(batch_id)
        with self._batch_lock(batch.batch_id):
            return [c.copy() for c in self._claims[batch.batch_id].values()]

    def claimable(self, batch_id: str, account: str) -> int:
        batch = self._lookup(batch_id)
        with self._batch_lock(batch.batch_id):
            claim = self._claims[batch.batch_id].get(str(account or "").strip())
            if claim is None:
                return 0
            return claims.claimable_amount(batch, claim)

    def account_batch_ids(self, account: str) -> List[str]:
        with self._registry_lock:
            return list(self._account_index.get(str(account or "").strip(), []))

    def account_batches(self, account: str) -> List[AccountBatchView]:
        acct = str(account or "").strip()
        out: List[AccountBatchView] = []
        for bid in self.account_batch_ids(acct):
            batch = self._lookup(bid)
            with self._batch_lock(bid):
                claim = self._claims[bid].get(acct)
                if claim is None or claim.deposit_amount <= 0:
                    continue
                claimable = claims.preview_claimable(batch, claim)
                out.append(AccountBatchView.from_records(batch.copy(), claim.copy(), claimable))
        return out

    def cooldown(self, direction: Any) -> CooldownState:
        return self._cooldowns[BatchDirection.parse(direction)]

    def batch_timing(self, direction: Any, now: Optional[int] = None) -> BatchTiming:
        d = BatchDirection.parse(direction)
        ts = int(self._clock() if now is None else now)
        return BatchTiming.from_cooldown(self.cooldown(d), ts, settlement_pending=bool(self._pending_settlement(d)))

    # ----------------------------
    # Persistence
    # ----------------------------

    def snapshot(self) -> Json:
        """JSON-safe copy of the full ledger. Consistent per direction."""
        batches: Dict[str, Json] = {}
        claim_rows: Dict[str, Dict[str, Json]] = {}

        for d in BatchDirection:
            with self._direction_locks[d]:
                with self._registry_lock:
                    ids = [bid for bid, b in self._batches.items() if b.direction is d]
                for bid in ids:
                    with self._batch_lock(bid):
                        batches[bid] = self._batches[bid].to_json()
                        claim_rows[bid] = {a: c.to_json() for a, c in self._claims[bid].items()}

        with self._registry_lock:
            account_index = copy.deepcopy(self._account_index)
            current = {d.value: bid for d, bid in self._current.items()}
            next_seq = {d.value: int(n) for d, n in self._next_seq.items()}
        cooldowns = {d.value: self._cooldowns[d].to_json() for d in BatchDirection}

        return {
            "snapshot_version": SNAPSHOT_VERSION,
            "batches": batches,
            "claims": claim_rows,
            "account_index": account_index,
            "current": current,
            "next_seq": next_seq,
            "cooldowns": cooldowns,
        }

    def _load_snapshot(self, snap: Json, *, cooldown_seconds: int) -> None:
        if not isinstance(snap, dict):
            raise ValueError("ledger snapshot must be a JSON object")
        version = snap.get("snapshot_version")
        if version != SNAPSHOT_VERSION:
            raise ValueError(f"ledger snapshot_version mismatch: have={version!r} want={SNAPSHOT_VERSION}")

        for bid, raw in (snap.get("batches") or {}).items():
            b = Batch.from_json(raw)
            if b.batch_id != bid:
                raise ValueError(f"ledger snapshot error: batch key {bid!r} != batch_id {b.batch_id!r}")
            self._batches[bid] = b
            self._batch_locks[bid] = threading.Lock()
            self._claims[bid] = {}

        for bid, rows in (snap.get("claims") or {}).items():
            if bid not in self._batches:
                raise ValueError(f"ledger snapshot error: claims for unknown batch {bid!r}")
            for acct, raw in (rows or {}).items():
                self._claims[bid][acct] = AccountClaim.from_json(raw)

        for acct, ids in (snap.get("account_index") or {}).items():
            self._account_index[str(acct)] = [str(i) for i in ids if str(i) in self._batches]

        for dv, bid in (snap.get("current") or {}).items():
            if bid in self._batches:
                self._current[BatchDirection.parse(dv)] = bid

        for dv, n in (snap.get("next_seq") or {}).items():
            self._next_seq[BatchDirection.parse(dv)] = int(n)

        for dv, raw in (snap.get("cooldowns") or {}).items():
            cd = CooldownState.from_json(raw)
            # configured cooldown wins over the persisted one
            self._cooldowns[BatchDirection.parse(dv)] = CooldownState(
                direction=cd.direction, last_settled_at=cd.last_settled_at, cooldown_duration=int(cooldown_seconds)
            )

        for b in self._batches.values():
            total = sum(c.deposit_amount for c in self._claims[b.batch_id].values())
            if total != b.supplied_total:
                raise ValueError(
                    f"ledger snapshot error: claims of {b.batch_id} sum to {total}, supplied_total is {b.supplied_total}"
                )

    def restore(self, snap: Json) -> None:
        """Replace the whole ledger state with `snap`, in place.

        The snapshot is validated into a fresh ledger first; on error this
        ledger is untouched.
        """
        cooldown = self._cooldowns[BatchDirection.MINT].cooldown_duration
        fresh = BatchLedger.from_snapshot(snap, cooldown_seconds=cooldown, clock=self._clock)
        with self._direction_locks[BatchDirection.MINT], self._direction_locks[BatchDirection.REDEEM]:
            with self._registry_lock:
                self._batches = fresh._batches
                self._claims = fresh._claims
                self._batch_locks = fresh._batch_locks
                self._account_index = fresh._account_index
                self._current = fresh._current
                self._next_seq = fresh._next_seq
                self._cooldowns = fresh._cooldowns
        for d in BatchDirection:
            set_gauge(f"open_batch_supplied_{d.value}", self._batches[self._current[d]].supplied_total)

    @classmethod
    def from_snapshot(
        cls,
        snap: Json,
        *,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], int] = _now_s,
    ) -> "BatchLedger":
        return cls(cooldown_seconds=cooldown_seconds, clock=clock, _restore=snap)
