from __future__ import annotations

import os
import threading
import time
from typing import Dict, List


def metrics_enabled() -> bool:
    return (os.environ.get("BASKETBATCH_METRICS_ENABLED") or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _now_ms() -> int:
    return int(time.time() * 1000)


class MetricsRegistry:
    """Process-local integer counters and gauges.

    Names are free-form snake_case (`deposits_mint_total`,
    `open_batch_supplied_redeem`); a blank name is ignored. Recording is always
    on; BASKETBATCH_METRICS_ENABLED only gates the HTTP exposition.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._gauges: Dict[str, int] = {}
        self.started_ms = _now_ms()

    def inc(self, name: str, value: int = 1) -> None:
        n = str(name or "").strip()
        if not n:
            return
        with self._lock:
            self._counters[n] = self._counters.get(n, 0) + int(value)

    def set(self, name: str, value: int) -> None:
        n = str(name or "").strip()
        if not n:
            return
        with self._lock:
            self._gauges[n] = int(value)

    def clear(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()

    def snapshot(self) -> dict:
        now = _now_ms()
        with self._lock:
            return {
                "ts_ms": now,
                "started_ms": self.started_ms,
                "uptime_ms": now - self.started_ms,
                "counters": dict(self._counters),
                "gauges": dict(self._gauges),
            }

    def prometheus(self, prefix: str) -> str:
        snap = self.snapshot()
        lines: List[str] = [f"# TYPE {prefix}uptime_ms gauge", f"{prefix}uptime_ms {snap['uptime_ms']}"]
        for kind, values in (("counter", snap["counters"]), ("gauge", snap["gauges"])):
            for k in sorted(values):
                lines.append(f"# TYPE {prefix}{k} {kind}")
                lines.append(f"{prefix}{k} {values[k]}")
        return "\n".join(lines) + "\n"


REGISTRY = MetricsRegistry()


def inc_counter(name: str, value: int = 1) -> None:
    REGISTRY.inc(name, value)


def set_gauge(name: str, value: int) -> None:
    REGISTRY.set(name, value)


def reset() -> None:
    REGISTRY.clear()


def snapshot() -> dict:
    return REGISTRY.snapshot()


def format_prometheus(prefix: str = "basketbatch_") -> str:
    return REGISTRY.prometheus(str(prefix or "").strip() or "basketbatch_")
