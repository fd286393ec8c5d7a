# src/basketbatch/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

Json = Dict[str, Any]

_SYNC_LEVELS = ("OFF", "NORMAL", "FULL", "EXTRA")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS meta (
      key TEXT PRIMARY KEY,
      value TEXT NOT NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS engine_state (
      id INTEGER PRIMARY KEY CHECK (id = 1),
      revision INTEGER NOT NULL,
      state_json TEXT NOT NULL,
      updated_ts_ms INTEGER NOT NULL
    );
    """,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _snapshot_json(obj: Any) -> str:
    # No default=str: a non-JSON value in a ledger snapshot must fail the write.
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    raw = str(os.environ.get(name, "")).strip()
    if not raw:
        return int(default)
    try:
        return int(raw)
    except ValueError:
        return int(default)


@dataclass(frozen=True)
class SqliteTuning:
    """Connection and write-retry knobs, read once from BASKETBATCH_SQLITE_*."""

    synchronous: str
    require_wal: bool
    connect_timeout_s: float
    busy_timeout_ms: int
    wal_autocheckpoint: int
    write_deadline_ms: int
    backoff_base_s: float
    backoff_max_s: float

    @classmethod
    def from_env(cls, mode: Optional[str] = None) -> "SqliteTuning":
        # Durability follows the engine mode: prod -> FULL, dev/testnet -> NORMAL.
        m = (mode or os.environ.get("BASKETBATCH_MODE") or "prod").strip().lower()
        default_sync = "FULL" if m == "prod" else "NORMAL"
        sync = (os.environ.get("BASKETBATCH_SQLITE_SYNCHRONOUS") or default_sync).strip().upper()
        if sync not in _SYNC_LEVELS:
            sync = default_sync

        connect_ms = max(0, _env_int("BASKETBATCH_SQLITE_CONNECT_TIMEOUT_MS", 30_000))
        base_ms = max(1, _env_int("BASKETBATCH_SQLITE_WRITE_BACKOFF_BASE_MS", 5))
        max_ms = max(base_ms, _env_int("BASKETBATCH_SQLITE_WRITE_BACKOFF_MAX_MS", 250))
        allow_non_wal = (os.environ.get("BASKETBATCH_SQLITE_ALLOW_NON_WAL") or "").strip().lower() in {"1", "true"}

        return cls(
            synchronous=sync,
            require_wal=not allow_non_wal,
            connect_timeout_s=connect_ms / 1000.0,
            busy_timeout_ms=max(0, _env_int("BASKETBATCH_SQLITE_BUSY_TIMEOUT_MS", connect_ms)),
            wal_autocheckpoint=max(1, _env_int("BASKETBATCH_SQLITE_WAL_AUTOCHECKPOINT", 1000)),
            write_deadline_ms=max(250, _env_int("BASKETBATCH_SQLITE_WRITE_DEADLINE_MS", 30_000)),
            backoff_base_s=base_ms / 1000.0,
            backoff_max_s=max_ms / 1000.0,
        )


class SqliteDB:
    """The engine's SQLite file.

    Every operation opens its own connection, so the DB can be used from the
    API threadpool and the settlement loop at the same time. SQLite has a
    single writer: write_tx() retries "database is locked" until a deadline.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str, mode: Optional[str] = None) -> None:
        self.path = str(path)
        self.tuning = SqliteTuning.from_env(mode)

    def _apply_pragmas(self, con: sqlite3.Connection) -> None:
        t = self.tuning
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        journal = str(row[0]).strip().lower() if row is not None else ""
        if t.require_wal and journal != "wal":
            raise RuntimeError(f"sqlite journal_mode is '{journal}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={t.synchronous};")
        con.execute("PRAGMA temp_store=MEMORY;")
        con.execute(f"PRAGMA wal_autocheckpoint={t.wal_autocheckpoint};")
        con.execute(f"PRAGMA busy_timeout={t.busy_timeout_ms};")

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        con = sqlite3.connect(
            self.path,
            timeout=self.tuning.connect_timeout_s,
            isolation_level=None,  # BEGIN/COMMIT are explicit
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row
        try:
            self._apply_pragmas(con)
        except Exception:
            con.close()
            raise
        return con

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    def init_schema(self) -> None:
        with self.write_tx() as con:
            for ddl in _SCHEMA:
                con.execute(ddl)

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
                return

            have = str(row["value"]).strip()
            if have != str(self.SCHEMA_VERSION):
                raise RuntimeError(
                    f"sqlite schema_version mismatch: have={have!r} want={self.SCHEMA_VERSION}; refusing to open {self.path}"
                )

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return "database is locked" in msg or "database is busy" in msg

    def _retry_locked(self, con: sqlite3.Connection, sql: str, deadline_ms: int) -> None:
        """Run `sql`, backing off with jitter while another writer holds the lock."""
        t = self.tuning
        attempt = 0
        while True:
            try:
                con.execute(sql)
                return
            except sqlite3.OperationalError as e:
                if not self._is_locked_error(e) or _now_ms() >= deadline_ms:
                    raise
            sleep_s = min(t.backoff_max_s, t.backoff_base_s * (2.0 ** min(attempt, 8)))
            time.sleep(sleep_s * (0.5 + random.random()))
            attempt += 1

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        deadline_ms = _now_ms() + self.tuning.write_deadline_ms
        with self.connection() as con:
            self._retry_locked(con, "BEGIN IMMEDIATE;", deadline_ms)
            try:
                yield con
                self._retry_locked(con, "COMMIT;", deadline_ms)
            except BaseException:
                if con.in_transaction:
                    con.execute("ROLLBACK;")
                raise


class SqliteStateStore:
    """Single-row store for the engine snapshot.

    `revision` starts at 1 and increments on every write, so an operator can
    tell how many mutations a DB has seen.
    """

    _SELECT = "SELECT revision, state_json FROM engine_state WHERE id=1;"

    def __init__(self, *, db: SqliteDB) -> None:
        self._db = db
        self._db.init_schema()

    def _row(self) -> Optional[sqlite3.Row]:
        with self._db.connection() as con:
            return con.execute(self._SELECT).fetchone()

    def exists(self) -> bool:
        return self._row() is not None

    def revision(self) -> int:
        row = self._row()
        return int(row["revision"]) if row is not None else 0

    @staticmethod
    def _decode(row: Optional[sqlite3.Row]) -> Json:
        if row is None:
            raise FileNotFoundError("no engine snapshot stored yet")
        st = json.loads(str(row["state_json"]))
        if not isinstance(st, dict):
            raise ValueError("engine snapshot is not a JSON object")
        return st

    def read(self) -> Json:
        return self._decode(self._row())

    def write(self, st: Json) -> None:
        if not isinstance(st, dict):
            raise ValueError("engine snapshot must be a dict")
        payload = _snapshot_json(st)
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO engine_state(id, revision, state_json, updated_ts_ms)
                VALUES(1, 1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  revision=engine_state.revision + 1,
                  state_json=excluded.state_json,
                  updated_ts_ms=excluded.updated_ts_ms;
                """,
                (payload, _now_ms()),
            )

