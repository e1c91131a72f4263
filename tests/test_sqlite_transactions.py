from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from esp.resources.types import ChunkUpload
from esp.runtime.sqlite_db import SqliteDB


def _db(tmp_path: Path) -> SqliteDB:
    db = SqliteDB(path=str(tmp_path / "tx.db"))
    db.init_schema()
    return db


def _balances(db: SqliteDB) -> dict:
    with db.connection() as con:
        return {r["account"]: int(r["balance"]) for r in con.execute("SELECT * FROM balances;").fetchall()}


def test_write_tx_rolls_back_on_error(tmp_path: Path) -> None:
    db = _db(tmp_path)

    with pytest.raises(RuntimeError):
        with db.write_tx() as con:
            con.execute("INSERT INTO balances(account, balance) VALUES('a', 10);")
            raise RuntimeError("boom")

    assert _balances(db) == {}


def test_nested_write_tx_joins_outer_transaction(tmp_path: Path) -> None:
    db = _db(tmp_path)

    with pytest.raises(RuntimeError):
        with db.write_tx() as outer:
            outer.execute("INSERT INTO balances(account, balance) VALUES('a', 10);")
            with db.write_tx() as inner:
                assert inner is outer
                inner.execute("INSERT INTO balances(account, balance) VALUES('b', 20);")
            assert db.in_write_tx() is True
            raise RuntimeError("late failure")

    assert _balances(db) == {}
    assert db.in_write_tx() is False


def test_on_commit_hooks_run_after_outermost_commit_only(tmp_path: Path) -> None:
    db = _db(tmp_path)
    fired = []

    with db.write_tx() as con:
        con.execute("INSERT INTO balances(account, balance) VALUES('a', 1);")
        with db.write_tx():
            db.on_commit(lambda: fired.append("inner"))
        assert fired == []
    assert fired == ["inner"]

    with pytest.raises(RuntimeError):
        with db.write_tx():
            db.on_commit(lambda: fired.append("dropped"))
            raise RuntimeError("rollback")
    assert fired == ["inner"]

    db.on_commit(lambda: fired.append("immediate"))
    assert fired == ["inner", "immediate"]


def test_balance_check_constraint(tmp_path: Path) -> None:
    db = _db(tmp_path)

    with pytest.raises(sqlite3.IntegrityError):
        with db.write_tx() as con:
            con.execute("INSERT INTO balances(account, balance) VALUES('a', -1);")


def test_read_snapshot_refuses_writes(tmp_path: Path) -> None:
    db = _db(tmp_path)
    with db.read_tx() as con:
        assert con.execute("SELECT COUNT(*) FROM content;").fetchone()[0] == 0
        with pytest.raises(RuntimeError):
            with db.write_tx():
                pass


def test_schema_version_mismatch_refuses_start(tmp_path: Path) -> None:
    db = _db(tmp_path)
    with db.write_tx() as con:
        con.execute("UPDATE meta SET value='99' WHERE key='schema_version';")

    with pytest.raises(RuntimeError):
        SqliteDB(path=db.path).init_schema()


def test_read_snapshot_ignores_concurrent_batch_upload(engine, put) -> None:
    before = put(engine, "/s", [b"old-0", b"old-1"])
    errors: list = []

    def _replace() -> None:
        try:
            engine.catalog.upload_batch(
                "/s",
                [ChunkUpload(b"new-0", "P1"), ChunkUpload(b"new-1", "P1"), ChunkUpload(b"new-2", "P1")],
                caller="P1",
            )
        except Exception as e:  # surfaced to the main thread below
            errors.append(e)

    with engine.db.read_tx():
        assert engine.catalog.read_chunks("/s") == tuple(before)

        t = threading.Thread(target=_replace)
        t.start()
        t.join(timeout=30)
        assert not t.is_alive()
        assert errors == []

        assert engine.catalog.read_chunks("/s") == tuple(before)
        assert engine.catalog.metadata("/s").content_length == 2

    after = engine.catalog.read_chunks("/s")
    assert len(after) == 3
    assert [engine.store.read(a) for a in after] == [b"new-0", b"new-1", b"new-2"]
    assert engine.catalog.metadata("/s").content_length == 3
