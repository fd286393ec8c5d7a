# src/basketbatch/runtime/settlement.py
from __future__ import annotations

"""Settlement pricing for a batch.

Mint (funding asset -> basket):
    input_value     = floor(supplied * funding_rate / SCALE)
    unit_value      = basket value of one unit (SCALE)
    expected_output = floor(input_value * SCALE / unit_value)

Redeem (basket -> funding asset):
    basket_value    = basket value of `supplied` units
    expected_output = floor(basket_value * SCALE / funding_rate)

minimum_output = expected_output - floor(expected_output * slippage_bps / 10000)

Pricing is pure with respect to the ledger. A price failure aborts the whole
attempt; no estimated or default price is ever substituted.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict

from basketbatch.ledger.constants import BPS_DENOMINATOR, SCALE
from basketbatch.ledger.fixed_point import div_scaled, mul_div, mul_scaled
from basketbatch.ledger.types import Batch, BatchDirection
from basketbatch.runtime.errors import InvalidSlippage, RateUnavailable
from basketbatch.runtime.event_log import log_event
from basketbatch.runtime.metrics import inc_counter
from basketbatch.runtime.nav import Composition, NavComposer

Json = Dict[str, Any]

log = logging.getLogger("basketbatch.settlement")


def validate_slippage_bps(slippage_bps: Any) -> int:
    if isinstance(slippage_bps, bool) or not isinstance(slippage_bps, int):
        raise InvalidSlippage("slippage_not_integer", {"slippage_bps": repr(slippage_bps)})
    if slippage_bps < 0 or slippage_bps >= BPS_DENOMINATOR:
        raise InvalidSlippage("slippage_out_of_range", {"slippage_bps": slippage_bps, "max_exclusive": BPS_DENOMINATOR})
    return slippage_bps


def minimum_output(expected_output: int, slippage_bps: Any) -> int:
    bps = validate_slippage_bps(slippage_bps)
    delta = mul_div(expected_output, bps, BPS_DENOMINATOR)
    return int(expected_output) - delta


@dataclass(frozen=True)
class SettlementQuote:
    batch_id: str
    direction: BatchDirection
    supplied_total: int
    expected_output: int
    minimum_output: int
    slippage_bps: int
    funding_rate: int
    basket_value: int

    def to_json(self) -> Json:
        return {
            "batch_id": self.batch_id,
            "direction": self.direction.value,
            "supplied_total": int(self.supplied_total),
            "expected_output": int(self.expected_output),
            "minimum_output": int(self.minimum_output),
            "slippage_bps": int(self.slippage_bps),
            "funding_rate": int(self.funding_rate),
            "basket_value": int(self.basket_value),
        }


class SettlementPricer:
    def __init__(
        self,
        *,
        nav: NavComposer,
        composition: Composition,
        basket_id: str,
        funding_component_id: str,
    ) -> None:
        self._nav = nav
        self._composition = composition
        self.basket_id = str(basket_id)
        self.funding_component_id = str(funding_component_id)

    def _unit_holdings(self):
        # one whole basket unit; NAV scales quantities to the batch size
        return self._composition.get_holdings(self.basket_id, SCALE)

    def expected_output(self, batch: Batch) -> tuple[int, int, int]:
        """Returns (expected_output, funding_rate, basket_value)."""
        holdings = self._unit_holdings()
        funding_rate = self._nav.component_rate(self.funding_component_id)
        if funding_rate <= 0:
            raise RateUnavailable("zero_funding_rate", {"component_id": self.funding_component_id})
        supplied = int(batch.supplied_total)

        if batch.direction is BatchDirection.MINT:
            basket_value = self._nav.compute_basket_value(holdings, SCALE)
            if basket_value <= 0:
                raise RateUnavailable("zero_basket_value", {"basket_id": self.basket_id})
            input_value = mul_scaled(supplied, funding_rate)
            return div_scaled(input_value, basket_value), funding_rate, basket_value

        basket_value = self._nav.compute_basket_value(holdings, supplied)
        return div_scaled(basket_value, funding_rate), funding_rate, basket_value

    def price_settlement(self, batch: Batch, slippage_bps: Any) -> SettlementQuote:
        bps = validate_slippage_bps(slippage_bps)
        try:
            expected, funding_rate, basket_value = self.expected_output(batch)
        except RateUnavailable as e:
            inc_counter("pricing_failures_total", 1)
            log_event(
                log,
                "settlement_pricing_failed",
                level=logging.WARNING,
                batch_id=batch.batch_id,
                reason=e.reason,
                details=e.details,
            )
            raise

        quote = SettlementQuote(
            batch_id=batch.batch_id,
            direction=batch.direction,
            supplied_total=int(batch.supplied_total),
            expected_output=expected,
            minimum_output=minimum_output(expected, bps),
            slippage_bps=bps,
            funding_rate=funding_rate,
            basket_value=basket_value,
        )
        log_event(log, "settlement_priced", **quote.to_json())
        return quote
