# src/basketbatch/runtime/rate_source.py
from __future__ import annotations

"""Price-source adapters.

A RateSource returns "quote units per 1 base unit" scaled by SCALE. Adapters
are pure reads: no state, no retries. Any failure (stale value, reverted call,
network error, timeout) surfaces as SourceUnavailable; retry policy belongs to
the caller.
"""

from typing import Any, Callable, Protocol

from basketbatch.runtime.errors import SourceUnavailable


class RateSource(Protocol):
    def get_rate(self, component_id: str) -> int:
        ...


def _checked_rate(v: Any, *, source: str, component_id: str) -> int:
    if isinstance(v, bool) or not isinstance(v, int):
        raise SourceUnavailable(
            "non_integer_rate",
            {"source": source, "component_id": component_id, "type": type(v).__name__},
        )
    if v <= 0:
        raise SourceUnavailable("non_positive_rate", {"source": source, "component_id": component_id, "rate": v})
    return v


class StaticRateSource:
    """Fixed rate. Used by config-file pricing and tests."""

    def __init__(self, rate: int, *, name: str = "static") -> None:
        self.name = str(name)
        self._rate = int(rate)

    def get_rate(self, component_id: str) -> int:
        return _checked_rate(self._rate, source=self.name, component_id=component_id)

    def __repr__(self) -> str:
        return f"StaticRateSource(name={self.name!r}, rate={self._rate})"


class CallableRateSource:
    """Wraps an arbitrary reader, e.g. a vault pricePerShare() or pool get_virtual_price() call.

    The reader receives the component id. Whatever it raises is reported as
    SourceUnavailable, so timeouts look exactly like any other read failure.
    """

    def __init__(self, reader: Callable[[str], Any], *, name: str = "") -> None:
        self._reader = reader
        self.name = str(name or getattr(reader, "__name__", "callable"))

    def get_rate(self, component_id: str) -> int:
        try:
            v = self._reader(component_id)
        except SourceUnavailable:
            raise
        except Exception as e:
            raise SourceUnavailable(
                "read_failed",
                {"source": self.name, "component_id": component_id, "error": f"{type(e).__name__}: {e}"},
            ) from e
        return _checked_rate(v, source=self.name, component_id=component_id)
