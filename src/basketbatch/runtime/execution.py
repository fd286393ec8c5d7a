# src/basketbatch/runtime/execution.py
from __future__ import annotations

"""Boundary to the execution layer that actually moves value.

The engine only hands over a batch id and a minimum acceptable output. The
gateway either rejects (Rejected) or returns a receipt. A receipt without
output_total means execution was submitted but not yet confirmed; the
realized output is reported later through SettlementCoordinator.confirm().
"""

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from basketbatch.ledger.constants import BPS_DENOMINATOR
from basketbatch.ledger.fixed_point import mul_div
from basketbatch.runtime.errors import Rejected

Json = Dict[str, Any]


@dataclass(frozen=True)
class SettlementReceipt:
    batch_id: str
    reference: str
    minimum_output: int
    output_total: Optional[int] = None

    @property
    def confirmed(self) -> bool:
        return self.output_total is not None

    def to_json(self) -> Json:
        return {
            "batch_id": self.batch_id,
            "reference": self.reference,
            "minimum_output": int(self.minimum_output),
            "output_total": self.output_total,
            "confirmed": self.confirmed,
        }


class ExecutionGateway(Protocol):
    def submit_settlement(self, batch_id: str, minimum_output: int, *, expected_output: int) -> SettlementReceipt:
        ...


class SimulatedExecutionGateway:
    """Dev/test gateway. Realizes expected_output minus `market_slippage_bps`.

    Mirrors on-chain behavior: a realized output below the minimum is rejected
    instead of settled.
    """

    def __init__(self, *, market_slippage_bps: int = 0, confirm_immediately: bool = True) -> None:
        if market_slippage_bps < 0 or market_slippage_bps >= BPS_DENOMINATOR:
            raise ValueError(f"market_slippage_bps must be in [0, {BPS_DENOMINATOR}); got {market_slippage_bps}")
        self.market_slippage_bps = int(market_slippage_bps)
        self.confirm_immediately = bool(confirm_immediately)
        self.submitted: list[SettlementReceipt] = []

    def realized_output(self, expected_output: int) -> int:
        return int(expected_output) - mul_div(expected_output, self.market_slippage_bps, BPS_DENOMINATOR)

    def submit_settlement(self, batch_id: str, minimum_output: int, *, expected_output: int) -> SettlementReceipt:
        realized = self.realized_output(expected_output)
        if realized < int(minimum_output):
            raise Rejected(
                "output_below_minimum",
                {"batch_id": batch_id, "realized_output": realized, "minimum_output": int(minimum_output)},
            )
        receipt = SettlementReceipt(
            batch_id=str(batch_id),
            reference=f"sim-{uuid.uuid4().hex[:16]}",
            minimum_output=int(minimum_output),
            output_total=realized if self.confirm_immediately else None,
        )
        self.submitted.append(receipt)
        return receipt
