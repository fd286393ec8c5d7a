# src/basketbatch/runtime/coordinator.py
from __future__ import annotations

"""Batch processing: freeze -> price -> submit -> settle.

One call to process() moves a direction forward by at most one step:

  - a frozen batch awaiting confirmation   -> "awaiting_confirmation"
  - a frozen batch with no submission      -> re-priced and resubmitted
  - otherwise                              -> try_freeze() the open batch

Price failures and rejections leave the frozen batch in place for the next
attempt; they never settle anything. dry_run prices the open batch and stops.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from basketbatch.ledger.constants import DEFAULT_SLIPPAGE_BPS
from basketbatch.ledger.fixed_point import div_scaled
from basketbatch.ledger.types import Batch, BatchDirection, BatchState
from basketbatch.runtime.batch_ledger import BatchLedger
from basketbatch.runtime.errors import EmptyBatch, InvalidState, Rejected, SlippageExceeded
from basketbatch.runtime.event_log import log_event
from basketbatch.runtime.execution import ExecutionGateway, SettlementReceipt
from basketbatch.runtime.metrics import inc_counter
from basketbatch.runtime.settlement import SettlementPricer, SettlementQuote, validate_slippage_bps

Json = Dict[str, Any]

log = logging.getLogger("basketbatch.coordinator")


@dataclass(frozen=True)
class ProcessResult:
    status: str  # "dry_run" | "settled" | "submitted" | "awaiting_confirmation"
    batch: Batch
    quote: Optional[SettlementQuote] = None
    receipt: Optional[SettlementReceipt] = None

    def to_json(self) -> Json:
        return {
            "status": self.status,
            "batch": self.batch.to_json(),
            "quote": self.quote.to_json() if self.quote is not None else None,
            "receipt": self.receipt.to_json() if self.receipt is not None else None,
        }


@dataclass(frozen=True)
class PendingSettlement:
    batch_id: str
    minimum_output: int
    expected_output: int
    reference: str

    def to_json(self) -> Json:
        return {
            "batch_id": self.batch_id,
            "minimum_output": int(self.minimum_output),
            "expected_output": int(self.expected_output),
            "reference": self.reference,
        }

    @classmethod
    def from_json(cls, d: Json) -> "PendingSettlement":
        return cls(
            batch_id=str(d["batch_id"]),
            minimum_output=int(d["minimum_output"]),
            expected_output=int(d["expected_output"]),
            reference=str(d.get("reference") or ""),
        )


def settlement_rate(output_total: int, supplied_total: int) -> int:
    """Realized output per input unit, scaled by SCALE."""
    if supplied_total <= 0:
        return 0
    return div_scaled(output_total, supplied_total)


class SettlementCoordinator:
    def __init__(
        self,
        *,
        ledger: BatchLedger,
        pricer: SettlementPricer,
        gateway: ExecutionGateway,
        slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        clock=None,
    ) -> None:
        self._ledger = ledger
        self._pricer = pricer
        self._gateway = gateway
        self.slippage_bps = int(slippage_bps)
        self._clock = clock or (lambda: int(time.time()))
        self._locks: Dict[BatchDirection, threading.Lock] = {d: threading.Lock() for d in BatchDirection}
        self._pending: Dict[str, PendingSettlement] = {}
        self._pending_lock = threading.Lock()

    # ----------------------------
    # Pending submissions
    # ----------------------------

    def pending(self, batch_id: str) -> Optional[PendingSettlement]:
        with self._pending_lock:
            return self._pending.get(str(batch_id))

    def pending_snapshot(self) -> List[Json]:
        with self._pending_lock:
            return [p.to_json() for _, p in sorted(self._pending.items())]

    def restore_pending(self, rows: List[Json]) -> None:
        with self._pending_lock:
            self._pending = {}
            for r in rows or []:
                p = PendingSettlement.from_json(r)
                self._pending[p.batch_id] = p

    # ----------------------------
    # Processing
    # ----------------------------

    def quote_open_batch(self, direction: Any, slippage_bps: Optional[int] = None) -> ProcessResult:
        d = BatchDirection.parse(direction)
        batch = self._ledger.current_batch(d)
        if batch.supplied_total <= 0:
            raise EmptyBatch("no_deposits", {"batch_id": batch.batch_id})
        bps = self.slippage_bps if slippage_bps is None else slippage_bps
        quote = self._pricer.price_settlement(batch, bps)
        return ProcessResult(status="dry_run", batch=batch, quote=quote)

    def process(
        self,
        direction: Any,
        *,
        now: Optional[int] = None,
        slippage_bps: Optional[int] = None,
        dry_run: bool = False,
    ) -> ProcessResult:
        d = BatchDirection.parse(direction)
        if dry_run:
            return self.quote_open_batch(d, slippage_bps)

        ts = int(self._clock() if now is None else now)
        bps = validate_slippage_bps(self.slippage_bps if slippage_bps is None else slippage_bps)

        with self._locks[d]:
            frozen = self._ledger.frozen_batches(d)
            if frozen:
                batch = frozen[0]
                if self.pending(batch.batch_id) is not None:
                    return ProcessResult(status="awaiting_confirmation", batch=batch)
            else:
                batch = self._ledger.try_freeze(d, ts)

            quote = self._pricer.price_settlement(batch, bps)

            try:
                receipt = self._gateway.submit_settlement(
                    batch.batch_id, quote.minimum_output, expected_output=quote.expected_output
                )
            except Rejected as e:
                inc_counter("settlement_rejections_total", 1)
                log_event(
                    log,
                    "settlement_rejected",
                    level=logging.WARNING,
                    batch_id=batch.batch_id,
                    reason=e.reason,
                    details=e.details,
                )
                raise

            with self._pending_lock:
                self._pending[batch.batch_id] = PendingSettlement(
                    batch_id=batch.batch_id,
                    minimum_output=quote.minimum_output,
                    expected_output=quote.expected_output,
                    reference=receipt.reference,
                )
            log_event(log, "settlement_submitted", **receipt.to_json())

            if not receipt.confirmed:
                return ProcessResult(status="submitted", batch=batch, quote=quote, receipt=receipt)

            settled = self._confirm_locked(batch.batch_id, int(receipt.output_total), ts)
            return ProcessResult(status="settled", batch=settled, quote=quote, receipt=receipt)

    def confirm(self, batch_id: str, output_total: int, *, now: Optional[int] = None) -> Batch:
        """Report the realized output of a submitted settlement."""
        batch = self._ledger.get_batch(batch_id)
        ts = int(self._clock() if now is None else now)
        with self._locks[batch.direction]:
            return self._confirm_locked(batch.batch_id, output_total, ts)

    def _confirm_locked(self, batch_id: str, output_total: int, now: int) -> Batch:
        batch = self._ledger.get_batch(batch_id)
        pending = self.pending(batch_id)
        if pending is None and batch.state is BatchState.FROZEN:
            raise InvalidState("no_submitted_settlement", {"batch_id": batch_id})
        if pending is not None and int(output_total) < pending.minimum_output:
            # rejected upstream: the batch stays FROZEN and the next process() resubmits it
            with self._pending_lock:
                self._pending.pop(batch_id, None)
            details = {"batch_id": batch_id, "output_total": int(output_total), "minimum_output": pending.minimum_output}
            inc_counter("settlement_rejections_total", 1)
            log_event(
                log,
                "settlement_rejected",
                level=logging.WARNING,
                reason="realized_output_below_minimum",
                reference=pending.reference,
                **details,
            )
            raise SlippageExceeded("realized_output_below_minimum", details)

        settled = self._ledger.settle(
            batch_id, output_total, settlement_rate(int(output_total), batch.supplied_total), now
        )
        with self._pending_lock:
            self._pending.pop(batch_id, None)
        return settled
