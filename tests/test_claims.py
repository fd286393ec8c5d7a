from __future__ import annotations

import random

import pytest

from basketbatch.ledger.types import AccountClaim, Batch, BatchDirection, BatchState
from basketbatch.runtime import claims
from basketbatch.runtime.batch_ledger import BatchLedger
from basketbatch.runtime.errors import AlreadyClaimed, InvalidState


def _settled(supplied: int, output: int) -> Batch:
    return Batch(
        batch_id="mint-1",
        direction=BatchDirection.MINT,
        seq=1,
        state=BatchState.SETTLED,
        supplied_total=supplied,
        unclaimed_shares=supplied,
        output_total=output,
        settlement_rate=0,
    )


def test_pro_rata_share_floors() -> None:
    b = _settled(3, 10)
    c = AccountClaim(batch_id=b.batch_id, account="a", deposit_amount=1)
    assert claims.claimable_amount(b, c) == 3


def test_zero_deposit_claims_zero() -> None:
    b = _settled(100, 10)
    c = AccountClaim(batch_id=b.batch_id, account="a", deposit_amount=0)
    assert claims.claimable_amount(b, c) == 0


def test_unsettled_batch_is_not_claimable() -> None:
    b = _settled(100, 10)
    b.state = BatchState.FROZEN
    c = AccountClaim(batch_id=b.batch_id, account="a", deposit_amount=5)
    with pytest.raises(InvalidState):
        claims.claimable_amount(b, c)
    assert claims.preview_claimable(b, c) == 0


def test_mark_claimed_returns_copy_and_is_terminal() -> None:
    c = AccountClaim(batch_id="mint-1", account="a", deposit_amount=5)
    paid = claims.mark_claimed(c, 7)
    assert paid.claimed and paid.claimed_amount == 7
    assert c.claimed is False
    with pytest.raises(AlreadyClaimed):
        claims.mark_claimed(paid)


def test_payout_is_independent_of_claim_order() -> None:
    deposits = {"a": 333, "b": 333, "c": 334, "d": 1}
    supplied = sum(deposits.values())
    output = 997

    def run(order: list[str]) -> dict[str, int]:
        ledger = BatchLedger(cooldown_seconds=0, clock=lambda: 1)
        for acct, amt in deposits.items():
            ledger.deposit("redeem", acct, amt)
        ledger.try_freeze("redeem")
        ledger.settle("redeem-1", output, 0)
        return {acct: ledger.mark_claimed("redeem-1", acct) for acct in order}

    forward = run(sorted(deposits))
    backward = run(sorted(deposits, reverse=True))
    assert forward == backward
    assert forward == {acct: (output * amt) // supplied for acct, amt in deposits.items()}


def test_total_paid_never_exceeds_output() -> None:
    rng = random.Random(7)
    for _ in range(50):
        n = rng.randint(1, 12)
        deposits = [rng.randint(1, 10**24) for _ in range(n)]
        output = rng.randint(0, 10**22)
        b = _settled(sum(deposits), output)

        paid = [
            claims.claimable_amount(b, AccountClaim(batch_id=b.batch_id, account=str(i), deposit_amount=d))
            for i, d in enumerate(deposits)
        ]
        assert sum(paid) <= output
        # floor dust is at most one base unit per claimant
        assert output - sum(paid) < n
