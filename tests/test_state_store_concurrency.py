from __future__ import annotations

import multiprocessing as mp
from pathlib import Path

from basketbatch.runtime.sqlite_db import SqliteDB, SqliteStateStore


def _worker(db_path: str, worker: int, n: int) -> None:
    store = SqliteStateStore(db=SqliteDB(path=db_path))
    for i in range(int(n)):
        store.write({"worker": worker, "seq": i, "big": 10**30 + i})


def test_snapshot_writes_are_cross_process_safe(tmp_path: Path) -> None:
    """Several processes overwrite the snapshot; every write bumps the revision exactly once."""
    db_path = str(tmp_path / "engine.db")
    store = SqliteStateStore(db=SqliteDB(path=db_path))
    store.write({"worker": -1, "seq": 0, "big": 0})

    procs: list[mp.Process] = []
    workers = 4
    per = 100

    for w in range(workers):
        pr = mp.Process(target=_worker, args=(db_path, w, per))
        pr.start()
        procs.append(pr)

    for pr in procs:
        pr.join(60)
        assert pr.exitcode == 0

    assert store.revision() == 1 + workers * per
    last = store.read()
    assert last["big"] == 10**30 + last["seq"]
    assert 0 <= last["worker"] < workers
