# src/basketbatch/runtime/claims.py
from __future__ import annotations

"""Pro-rata claim math.

An account's share is floor(output_total * deposit_amount / supplied_total),
computed from the batch's immutable totals. It never reads unclaimed_shares,
so the payout of one account does not depend on who claimed before it. Floor
rounding leaves at most one base unit of dust per claim in the batch; the dust
is not redistributed.
"""

from basketbatch.ledger.fixed_point import mul_div
from basketbatch.ledger.types import AccountClaim, Batch, BatchState
from basketbatch.runtime.errors import AlreadyClaimed, InvalidState


def _require_settled(batch: Batch) -> int:
    if batch.state is not BatchState.SETTLED or batch.output_total is None:
        raise InvalidState("batch_not_settled", {"batch_id": batch.batch_id, "state": batch.state.value})
    return int(batch.output_total)


def claimable_amount(batch: Batch, claim: AccountClaim) -> int:
    output_total = _require_settled(batch)
    if claim.claimed:
        raise AlreadyClaimed("claim_already_paid", {"batch_id": batch.batch_id, "account": claim.account})
    if claim.deposit_amount == 0:
        return 0
    if batch.supplied_total <= 0:
        raise InvalidState("settled_batch_without_supply", {"batch_id": batch.batch_id})
    return mul_div(output_total, claim.deposit_amount, batch.supplied_total)


def preview_claimable(batch: Batch, claim: AccountClaim) -> int:
    """Same as claimable_amount but 0 for unsettled batches and paid claims."""
    if batch.state is not BatchState.SETTLED or claim.claimed:
        return 0
    return claimable_amount(batch, claim)


def mark_claimed(claim: AccountClaim, amount: int = 0) -> AccountClaim:
    """Return the terminal (claimed) copy of a claim. The input is not mutated."""
    if claim.claimed:
        raise AlreadyClaimed("claim_already_paid", {"batch_id": claim.batch_id, "account": claim.account})
    out = claim.copy()
    out.claimed = True
    out.claimed_amount = int(amount)
    return out
