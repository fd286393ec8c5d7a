from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from basketbatch.ledger.types import BatchDirection
from basketbatch.runtime.errors import BatchError
from basketbatch.runtime.event_log import log_event
from basketbatch.runtime.metrics import inc_counter, set_gauge


log = logging.getLogger("basketbatch.settlement_loop")


@dataclass(frozen=True, slots=True)
class SettlementLoopConfig:
    interval_ms: int
    enabled: bool
    lock_path: str

    # Reliability knobs
    fail_fast_after: int
    error_backoff_min_ms: int
    error_backoff_max_ms: int


def _env_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return bool(default)
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, str(default)))
    except Exception:
        return int(default)


def settlement_loop_config_from_env() -> SettlementLoopConfig:
    enabled = _env_bool("BASKETBATCH_LOOP_ENABLED", True)
    interval_ms = max(250, _env_int("BASKETBATCH_LOOP_INTERVAL_MS", 30_000))
    lock_path = os.environ.get("BASKETBATCH_LOOP_LOCK_PATH", "./data/settlement_loop.lock")

    fail_fast_after = max(3, _env_int("BASKETBATCH_LOOP_FAIL_FAST_AFTER", 10))
    error_backoff_min_ms = max(50, _env_int("BASKETBATCH_LOOP_ERROR_BACKOFF_MIN_MS", 250))
    error_backoff_max_ms = max(error_backoff_min_ms, _env_int("BASKETBATCH_LOOP_ERROR_BACKOFF_MAX_MS", 10_000))

    return SettlementLoopConfig(
        interval_ms=int(interval_ms),
        enabled=bool(enabled),
        lock_path=str(lock_path),
        fail_fast_after=int(fail_fast_after),
        error_backoff_min_ms=int(error_backoff_min_ms),
        error_backoff_max_ms=int(error_backoff_max_ms),
    )


class _FileLock:
    """Single-process lock for the settlement loop.

    Prevents multiple web workers from each driving settlements.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._fh = None

    def acquire(self) -> bool:
        import fcntl

        os.makedirs(os.path.dirname(self._path) or ".", exist_ok=True)
        try:
            fh = open(self._path, "a+", encoding="utf-8")
        except OSError:
            return False

        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fh.close()
            return False

        self._fh = fh
        fh.seek(0)
        fh.truncate()
        fh.write(f"pid={os.getpid()}\n")
        fh.flush()
        return True

    def release(self) -> None:
        import fcntl

        fh = self._fh
        self._fh = None
        if fh is None:
            return
        try:
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            fh.close()


class SettlementLoop:
    """Background driver: calls engine.process() for each direction on an interval.

    Outcomes per tick:
      - recoverable errors (cooldown, empty batch) are expected; skip quietly
      - anything else counts as a failure: exponential backoff, and after
        `fail_fast_after` consecutive failures the loop marks itself unhealthy
        and stops
    """

    def __init__(self, *, engine, cfg: Optional[SettlementLoopConfig] = None) -> None:
        self._engine = engine
        self._cfg = cfg or settlement_loop_config_from_env()

        self._lock = _FileLock(self._cfg.lock_path)
        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._started = False

        self.unhealthy = False
        self.consecutive_failures = 0
        self.last_error: str = ""
        self.last_results: Dict[str, Any] = {}

    @property
    def started(self) -> bool:
        return self._started

    @property
    def running(self) -> bool:
        t = self._t
        return bool(self._started and t is not None and t.is_alive())

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "unhealthy": self.unhealthy,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "last_results": dict(self.last_results),
        }

    def start(self) -> bool:
        if self._started:
            return True
        if not self._cfg.enabled:
            return False
        if not self._lock.acquire():
            return False
        self._t = threading.Thread(target=self._run, name="basketbatch-settlement-loop", daemon=True)
        self._t.start()
        self._started = True
        inc_counter("settlement_loop_start_total", 1)
        return True

    def stop(self) -> None:
        self._stop.set()
        t = self._t
        if t is not None:
            t.join(timeout=2.0)
        self._lock.release()
        self._started = False
        inc_counter("settlement_loop_stop_total", 1)

    def _mark_error(self, *, where: str, err: Exception) -> None:
        self.consecutive_failures += 1
        self.last_error = f"{where}:{type(err).__name__}:{err}"

        inc_counter("settlement_loop_errors_total", 1)
        set_gauge("settlement_loop_consecutive_failures", self.consecutive_failures)

        if isinstance(err, BatchError):
            log_event(
                log,
                "settlement_loop_error",
                level=logging.WARNING,
                where=where,
                failures=self.consecutive_failures,
                **err.to_json(),
            )
        else:
            log.exception("settlement loop error (%s) failures=%s", where, self.consecutive_failures)

    def _clear_error(self) -> None:
        if self.consecutive_failures == 0 and not self.last_error:
            return
        self.consecutive_failures = 0
        self.last_error = ""
        set_gauge("settlement_loop_consecutive_failures", 0)

    def _sleep_backoff(self) -> None:
        n = max(1, int(self.consecutive_failures))
        base = int(self._cfg.error_backoff_min_ms)
        cap = int(self._cfg.error_backoff_max_ms)
        ms = min(cap, base * (2 ** min(10, n - 1)))
        self._stop.wait(max(0.0, float(ms) / 1000.0))

    def _trip_unhealthy_and_stop(self) -> None:
        self.unhealthy = True
        set_gauge("settlement_loop_unhealthy", 1)
        inc_counter("settlement_loop_failfast_total", 1)
        log.error(
            "settlement loop fail-fast tripped: failures=%s last_error=%s",
            self.consecutive_failures,
            self.last_error,
        )
        self._stop.set()

    def tick(self) -> bool:
        """Process every direction once. Returns False if any direction failed."""
        ok = True
        for d in BatchDirection:
            try:
                res = self._engine.process(d)
                self.last_results[d.value] = res.status
                inc_counter(f"settlement_loop_{res.status}_total", 1)
            except BatchError as err:
                if err.recoverable:
                    self.last_results[d.value] = f"skipped:{err.reason}"
                    log_event(log, "settlement_skipped", level=logging.DEBUG, direction=d.value, **err.to_json())
                    continue
                self.last_results[d.value] = f"failed:{err.code}"
                self._mark_error(where=f"process_{d.value}", err=err)
                ok = False
            except Exception as err:
                self.last_results[d.value] = "failed:internal"
                self._mark_error(where=f"process_{d.value}", err=err)
                ok = False
        if ok:
            self._clear_error()
        return ok

    def _run(self) -> None:
        interval_s = float(self._cfg.interval_ms) / 1000.0
        next_ts = time.monotonic()

        while not self._stop.is_set():
            inc_counter("settlement_loop_ticks_total", 1)
            now = time.monotonic()
            if now < next_ts:
                self._stop.wait(min(0.25, next_ts - now))
                continue

            next_ts = now + interval_s

            if self.tick():
                continue
            if self.consecutive_failures >= int(self._cfg.fail_fast_after):
                self._trip_unhealthy_and_stop()
                break
            self._sleep_backoff()
