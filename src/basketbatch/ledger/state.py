from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

from basketbatch.ledger.types import AccountClaim, Batch, BatchDirection, CooldownState

Json = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class AccountBatchView:
    """
    Immutable per-account view of one batch, as shown to a depositor.

    account_claimable is 0 until the batch is settled, and 0 again once the
    account has claimed.
    """

    batch: Batch
    account: str
    account_supplied: int
    account_claimable: int
    claimed: bool

    @classmethod
    def from_records(cls, batch: Batch, claim: AccountClaim, claimable: int) -> "AccountBatchView":
        return cls(
            batch=batch,
            account=claim.account,
            account_supplied=int(claim.deposit_amount),
            account_claimable=int(claimable),
            claimed=bool(claim.claimed),
        )

    def to_json(self) -> Json:
        out = self.batch.to_json()
        out.update(
            {
                "account": self.account,
                "account_supplied": int(self.account_supplied),
                "account_claimable": int(self.account_claimable),
                "claimed": bool(self.claimed),
            }
        )
        return out


@dataclass(frozen=True, slots=True)
class BatchTiming:
    """When the open batch of a direction becomes eligible for freezing."""

    direction: BatchDirection
    next_eligible_at: int
    seconds_remaining: int
    progress_pct: float
    settlement_pending: bool = False

    @classmethod
    def from_cooldown(cls, cd: CooldownState, now: int, *, settlement_pending: bool = False) -> "BatchTiming":
        remaining = max(0, cd.next_eligible_at - int(now))
        duration = int(cd.cooldown_duration)
        if duration <= 0:
            pct = 100.0
        else:
            elapsed = min(duration, max(0, int(now) - int(cd.last_settled_at)))
            pct = round(100.0 * elapsed / duration, 2)
        return cls(
            direction=cd.direction,
            next_eligible_at=cd.next_eligible_at,
            seconds_remaining=remaining,
            progress_pct=pct,
            settlement_pending=settlement_pending,
        )

    def to_json(self) -> Json:
        return {
            "direction": self.direction.value,
            "next_eligible_at": int(self.next_eligible_at),
            "seconds_remaining": int(self.seconds_remaining),
            "progress_pct": float(self.progress_pct),
            "settlement_pending": bool(self.settlement_pending),
        }
