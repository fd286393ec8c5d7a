from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from basketbatch.runtime.sqlite_db import SqliteDB, SqliteStateStore


def _pragma(con: sqlite3.Connection, name: str) -> int | str:
    row = con.execute(f"PRAGMA {name};").fetchone()
    if row is None:
        raise AssertionError(f"missing pragma: {name}")
    return row[0]


def test_sqlite_operational_pragmas_are_applied(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BASKETBATCH_MODE", "prod")
    monkeypatch.delenv("BASKETBATCH_SQLITE_SYNCHRONOUS", raising=False)
    monkeypatch.setenv("BASKETBATCH_SQLITE_BUSY_TIMEOUT_MS", "1234")
    monkeypatch.setenv("BASKETBATCH_SQLITE_WAL_AUTOCHECKPOINT", "777")

    db = SqliteDB(path=str(tmp_path / "engine.db"))
    db.init_schema()

    with db.connection() as con:
        assert str(_pragma(con, "journal_mode")).lower() == "wal"
        # FULL is the prod default.
        assert int(_pragma(con, "synchronous")) == 2
        # MEMORY corresponds to 2
        assert int(_pragma(con, "temp_store")) == 2
        assert int(_pragma(con, "busy_timeout")) == 1234
        assert int(_pragma(con, "wal_autocheckpoint")) == 777


def test_dev_mode_defaults_to_normal_sync(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BASKETBATCH_MODE", "dev")
    monkeypatch.setenv("BASKETBATCH_SQLITE_SYNCHRONOUS", "bogus")

    db = SqliteDB(path=str(tmp_path / "engine.db"))
    with db.connection() as con:
        assert int(_pragma(con, "synchronous")) == 1


def test_schema_version_mismatch_refuses_to_start(tmp_path: Path) -> None:
    db = SqliteDB(path=str(tmp_path / "engine.db"))
    db.init_schema()
    with db.write_tx() as con:
        con.execute("UPDATE meta SET value='99' WHERE key='schema_version';")

    with pytest.raises(RuntimeError):
        db.init_schema()


def test_state_store_write_read_and_revision(tmp_path: Path) -> None:
    store = SqliteStateStore(db=SqliteDB(path=str(tmp_path / "engine.db")))
    assert not store.exists()
    assert store.revision() == 0
    with pytest.raises(FileNotFoundError):
        store.read()

    big = 2**200
    store.write({"a": 1, "big": big})
    store.write({"a": 2, "big": big})
    assert store.exists()
    assert store.revision() == 2
    assert store.read() == {"a": 2, "big": big}


def test_failed_write_tx_rolls_back(tmp_path: Path) -> None:
    db = SqliteDB(path=str(tmp_path / "engine.db"))
    store = SqliteStateStore(db=db)
    store.write({"value": 1})

    with pytest.raises(RuntimeError):
        with db.write_tx() as con:
            con.execute("UPDATE engine_state SET revision=revision+1, state_json='{}' WHERE id=1;")
            raise RuntimeError("mutation failed")
    assert store.read() == {"value": 1}
    assert store.revision() == 1


def test_non_json_snapshot_is_refused(tmp_path: Path) -> None:
    store = SqliteStateStore(db=SqliteDB(path=str(tmp_path / "engine.db")))
    store.write({"value": 1})
    with pytest.raises(TypeError):
        store.write({"value": object()})
    assert store.read() == {"value": 1}
