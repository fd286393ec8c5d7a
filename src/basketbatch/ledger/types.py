"""basketbatch.ledger.types

Batch + per-account claim object model with a JSON-backed schema.

This module defines:
  - BatchDirection / BatchState enums
  - Batch, AccountClaim, CooldownState records
  - strict coercion used when restoring persisted snapshots
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from basketbatch.ledger.constants import DEFAULT_COOLDOWN_SECONDS

Json = Dict[str, Any]


def _coerce_int(v: Any, *, field: str) -> int:
    try:
        # bool is an int subclass; disallow it explicitly
        if isinstance(v, bool):
            raise ValueError("bool is not a valid int")
        return int(v)
    except Exception as e:
        raise ValueError(f"batch schema error: field '{field}' must be int-coercible (got {type(v).__name__})") from e


def _coerce_opt_int(v: Any, *, field: str) -> Optional[int]:
    if v is None:
        return None
    return _coerce_int(v, field=field)


class BatchDirection(str, Enum):
    MINT = "mint"
    REDEEM = "redeem"

    @classmethod
    def parse(cls, v: Any) -> "BatchDirection":
        if isinstance(v, BatchDirection):
            return v
        s = str(v or "").strip().lower()
        for d in cls:
            if d.value == s:
                return d
        raise ValueError(f"unknown batch direction: {v!r}")


class BatchState(str, Enum):
    OPEN = "open"
    FROZEN = "frozen"
    SETTLED = "settled"


def make_batch_id(direction: BatchDirection, seq: int) -> str:
    return f"{direction.value}-{int(seq)}"


@dataclass
class Batch:
    """One time-windowed group of deposits settled at a single rate.

    unclaimed_shares starts equal to supplied_total and only decreases as
    accounts claim. It is informational: payouts always divide by the
    immutable supplied_total.
    """

    batch_id: str
    direction: BatchDirection
    seq: int
    state: BatchState = BatchState.OPEN
    supplied_total: int = 0
    unclaimed_shares: int = 0
    output_total: Optional[int] = None
    settlement_rate: Optional[int] = None
    created_at: int = 0
    frozen_at: Optional[int] = None
    settled_at: Optional[int] = None

    @property
    def claimable(self) -> bool:
        return self.state is BatchState.SETTLED

    def copy(self) -> "Batch":
        return replace(self)

    def to_json(self) -> Json:
        return {
            "batch_id": self.batch_id,
            "direction": self.direction.value,
            "seq": int(self.seq),
            "state": self.state.value,
            "supplied_total": int(self.supplied_total),
            "unclaimed_shares": int(self.unclaimed_shares),
            "output_total": self.output_total,
            "settlement_rate": self.settlement_rate,
            "created_at": int(self.created_at),
            "frozen_at": self.frozen_at,
            "settled_at": self.settled_at,
        }

    @classmethod
    def from_json(cls, d: Json) -> "Batch":
        if not isinstance(d, dict):
            raise ValueError("batch schema error: record must be an object")
        return cls(
            batch_id=str(d.get("batch_id") or ""),
            direction=BatchDirection.parse(d.get("direction")),
            seq=_coerce_int(d.get("seq"), field="seq"),
            state=BatchState(str(d.get("state") or "open")),
            supplied_total=_coerce_int(d.get("supplied_total", 0), field="supplied_total"),
            unclaimed_shares=_coerce_int(d.get("unclaimed_shares", 0), field="unclaimed_shares"),
            output_total=_coerce_opt_int(d.get("output_total"), field="output_total"),
            settlement_rate=_coerce_opt_int(d.get("settlement_rate"), field="settlement_rate"),
            created_at=_coerce_int(d.get("created_at", 0), field="created_at"),
            frozen_at=_coerce_opt_int(d.get("frozen_at"), field="frozen_at"),
            settled_at=_coerce_opt_int(d.get("settled_at"), field="settled_at"),
        )


@dataclass
class AccountClaim:
    """An account's contribution to one batch. Terminal once claimed."""

    batch_id: str
    account: str
    deposit_amount: int = 0
    claimed: bool = False
    claimed_amount: int = 0

    def copy(self) -> "AccountClaim":
        return replace(self)

    def to_json(self) -> Json:
        return {
            "batch_id": self.batch_id,
            "account": self.account,
            "deposit_amount": int(self.deposit_amount),
            "claimed": bool(self.claimed),
            "claimed_amount": int(self.claimed_amount),
        }

    @classmethod
    def from_json(cls, d: Json) -> "AccountClaim":
        if not isinstance(d, dict):
            raise ValueError("claim schema error: record must be an object")
        return cls(
            batch_id=str(d.get("batch_id") or ""),
            account=str(d.get("account") or ""),
            deposit_amount=_coerce_int(d.get("deposit_amount", 0), field="deposit_amount"),
            claimed=bool(d.get("claimed", False)),
            claimed_amount=_coerce_int(d.get("claimed_amount", 0), field="claimed_amount"),
        )


@dataclass(frozen=True)
class CooldownState:
    direction: BatchDirection
    last_settled_at: int = 0
    cooldown_duration: int = DEFAULT_COOLDOWN_SECONDS

    @property
    def next_eligible_at(self) -> int:
        return int(self.last_settled_at) + int(self.cooldown_duration)

    def elapsed(self, now: int) -> bool:
        return int(now) - int(self.last_settled_at) >= int(self.cooldown_duration)

    def to_json(self) -> Json:
        return {
            "direction": self.direction.value,
            "last_settled_at": int(self.last_settled_at),
            "cooldown_duration": int(self.cooldown_duration),
        }

    @classmethod
    def from_json(cls, d: Json) -> "CooldownState":
        return cls(
            direction=BatchDirection.parse(d.get("direction")),
            last_settled_at=_coerce_int(d.get("last_settled_at", 0), field="last_settled_at"),
            cooldown_duration=_coerce_int(
                d.get("cooldown_duration", DEFAULT_COOLDOWN_SECONDS), field="cooldown_duration"
            ),
        )


@dataclass(frozen=True)
class ComponentHolding:
    """Point-in-time quantity of a priced component backing basket units."""

    component_id: str
    units_held: int
