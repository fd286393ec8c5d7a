# src/basketbatch/runtime/nav.py
from __future__ import annotations

"""Basket NAV composition.

A basket unit is backed by a fixed set of components. Each component is priced
by chaining the hops declared for it, commonly two: a wrapped-asset share price
multiplied by a pool virtual price.

    rate(component)  = floor(floor(SCALE * hop_1 / SCALE) * hop_2 / SCALE) ...
    quantity         = floor(units_held * units / SCALE)
    value            = sum(floor(rate * quantity / SCALE))

Consistency: holdings and every hop rate are independent snapshots, possibly
read at slightly different times. Nothing here assumes the sources are
mutually atomic.
"""

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

from basketbatch.ledger.constants import SCALE
from basketbatch.ledger.fixed_point import mul_div, mul_scaled
from basketbatch.ledger.types import ComponentHolding
from basketbatch.runtime.errors import RateUnavailable, SourceUnavailable
from basketbatch.runtime.event_log import log_event
from basketbatch.runtime.metrics import inc_counter
from basketbatch.runtime.rate_source import RateSource

log = logging.getLogger("basketbatch.nav")


@dataclass(frozen=True)
class ComponentPricing:
    component_id: str
    hops: Tuple[RateSource, ...]

    def __post_init__(self) -> None:
        if not str(self.component_id).strip():
            raise ValueError("component_id must be a non-empty string")
        if not self.hops:
            raise ValueError(f"component {self.component_id!r} must declare at least one price hop")


class Composition(Protocol):
    def get_holdings(self, basket_id: str, units: int) -> List[ComponentHolding]:
        ...


class StaticComposition:
    """Fixed composition: quantities of each component backing ONE basket unit (SCALE)."""

    def __init__(self, per_unit: Mapping[str, int]) -> None:
        self._per_unit: Dict[str, int] = {str(k): int(v) for k, v in per_unit.items()}

    def get_holdings(self, basket_id: str, units: int) -> List[ComponentHolding]:
        return [
            ComponentHolding(component_id=cid, units_held=mul_div(q, units, SCALE))
            for cid, q in sorted(self._per_unit.items())
        ]


def chain_rates(rates: Sequence[int]) -> int:
    out = SCALE
    for r in rates:
        out = mul_scaled(out, r)
    return out


class NavComposer:
    """Prices components by fetching every hop on one long-lived thread pool.

    Pricing is resolved once at setup; no lookups by name per hop. A timeout
    fails the call but cannot interrupt a hung `get_rate`: that worker stays
    busy until the source returns, so at most `max_workers` threads are ever
    held. Rate sources doing I/O should bound it themselves.
    """

    def __init__(
        self,
        pricing: Mapping[str, ComponentPricing],
        *,
        max_workers: int = 8,
        timeout_s: Optional[float] = None,
    ) -> None:
        self._pricing: Dict[str, ComponentPricing] = dict(pricing)
        self._max_workers = max(1, int(max_workers))
        self._timeout_s = timeout_s
        self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="nav-rate")

    def _pricing_for(self, component_id: str) -> ComponentPricing:
        p = self._pricing.get(component_id)
        if p is None:
            raise RateUnavailable("no_pricing_for_component", {"component_id": component_id})
        return p

    def _fetch_all(self, component_ids: Iterable[str]) -> Dict[str, int]:
        """Fetch every hop of every component in parallel; all or nothing."""
        jobs: List[Tuple[str, int, RateSource]] = []
        hop_counts: Dict[str, int] = {}
        for cid in component_ids:
            if cid in hop_counts:
                continue
            p = self._pricing_for(cid)
            hop_counts[cid] = len(p.hops)
            for i, src in enumerate(p.hops):
                jobs.append((cid, i, src))

        if not jobs:
            return {}

        futures = {self._pool.submit(src.get_rate, cid): (cid, i) for cid, i, src in jobs}
        try:
            done, not_done = wait(futures, timeout=self._timeout_s, return_when=FIRST_EXCEPTION)

            for fut in done:
                exc = fut.exception()
                if exc is None:
                    continue
                cid, i = futures[fut]
                inc_counter("nav_rate_failures_total", 1)
                if isinstance(exc, SourceUnavailable):
                    raise RateUnavailable(
                        "hop_source_unavailable",
                        {"component_id": cid, "hop": i, "source_reason": exc.reason, "source_details": exc.details},
                    ) from exc
                raise RateUnavailable(
                    "hop_source_failed", {"component_id": cid, "hop": i, "error": f"{type(exc).__name__}: {exc}"}
                ) from exc

            if not_done:
                inc_counter("nav_rate_failures_total", 1)
                pending = sorted(f"{futures[f][0]}#{futures[f][1]}" for f in not_done)
                raise RateUnavailable("hop_source_timeout", {"pending": pending, "timeout_s": self._timeout_s})

            per_hop: Dict[str, List[int]] = {cid: [0] * n for cid, n in hop_counts.items()}
            for fut, (cid, i) in futures.items():
                per_hop[cid][i] = int(fut.result())
        finally:
            # drop hops still queued behind a failure or timeout
            for fut in futures:
                fut.cancel()

        return {cid: chain_rates(rates) for cid, rates in per_hop.items()}

    def component_rate(self, component_id: str) -> int:
        return self._fetch_all([component_id])[component_id]

    def compute_basket_value(self, holdings: Sequence[ComponentHolding], units: int) -> int:
        """Value of `units` basket units given per-unit holdings. Empty holdings -> 0."""
        if not holdings:
            return 0
        rates = self._fetch_all(h.component_id for h in holdings)

        total = 0
        for h in holdings:
            quantity = mul_div(h.units_held, units, SCALE)
            total += mul_scaled(rates[h.component_id], quantity)

        log_event(
            log,
            "nav_computed",
            level=logging.DEBUG,
            units=int(units),
            value=int(total),
            rates={k: int(v) for k, v in sorted(rates.items())},
        )
        return total
