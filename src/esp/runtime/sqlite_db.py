# src/esp/runtime/sqlite_db.py
from __future__ import annotations

import json
import os
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Used for anything that is hashed or persisted, so it must stay stable.
    Unknown types are not coerced.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except ValueError:
        return int(default)


class SqliteDB:
    """SQLite manager for the storage engine.

    One durable file holds content, ledger, catalog and events. Connections
    are never shared between threads; SQLite locks cover other processes.

    Transactions:
      - write_tx() opens BEGIN IMMEDIATE; nested write_tx()/connection() calls
        on the same thread join the open transaction so a composite operation
        commits or rolls back as one unit.
      - read_tx() pins a single WAL snapshot for multi-statement reads.
      - on_commit() callbacks run only after the outermost COMMIT succeeds.
    """

    SCHEMA_VERSION = 1

    def __init__(self, *, path: str, mode: str = "prod") -> None:
        self.path = str(path)
        self.mode = str(mode or "prod").strip().lower()
        self._local = threading.local()

    def _sqlite_synchronous_pragma(self) -> str:
        """Return a safe PRAGMA synchronous value.

        Defaults:
          - prod        -> FULL
          - dev/test    -> NORMAL

        Override with ESP_SQLITE_SYNCHRONOUS in {OFF,NORMAL,FULL,EXTRA}.
        """
        default = "FULL" if self.mode == "prod" else "NORMAL"
        raw = (os.environ.get("ESP_SQLITE_SYNCHRONOUS") or default).strip().upper()

        allowed = {"OFF", "NORMAL", "FULL", "EXTRA"}
        if raw not in allowed:
            raw = default
        return raw

    def ensure_parent_dir(self) -> None:
        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        self.ensure_parent_dir()

        connect_timeout_s = float(_env_int("ESP_SQLITE_CONNECT_TIMEOUT_MS", 30_000)) / 1000.0

        con = sqlite3.connect(
            self.path,
            timeout=connect_timeout_s,
            isolation_level=None,  # we manage BEGIN/COMMIT ourselves
            check_same_thread=False,
        )
        con.row_factory = sqlite3.Row

        # WAL lets readers keep a consistent snapshot while a writer commits.
        allow_non_wal = (os.environ.get("ESP_SQLITE_ALLOW_NON_WAL") or "").strip() in {"1", "true", "TRUE"}
        row = con.execute("PRAGMA journal_mode=WAL;").fetchone()
        mode = str(row[0]).strip().lower() if row is not None else ""
        if mode and mode != "wal" and not allow_non_wal:
            con.close()
            raise RuntimeError(f"sqlite journal_mode is '{mode}', expected 'wal'")

        con.execute(f"PRAGMA synchronous={self._sqlite_synchronous_pragma()};")
        con.execute("PRAGMA foreign_keys=ON;")
        con.execute("PRAGMA temp_store=MEMORY;")

        wal_ckpt = max(1, _env_int("ESP_SQLITE_WAL_AUTOCHECKPOINT", 1000))
        con.execute(f"PRAGMA wal_autocheckpoint={wal_ckpt};")

        jsl = max(0, _env_int("ESP_SQLITE_JOURNAL_SIZE_LIMIT", 64 * 1024 * 1024))
        con.execute(f"PRAGMA journal_size_limit={jsl};")

        # Negative means KiB. Default 64 MiB.
        cache_kib = max(0, _env_int("ESP_SQLITE_CACHE_SIZE_KIB", 64 * 1024))
        con.execute(f"PRAGMA cache_size={-cache_kib};")

        mmap_bytes = max(0, _env_int("ESP_SQLITE_MMAP_SIZE", 0))
        if mmap_bytes:
            con.execute(f"PRAGMA mmap_size={mmap_bytes};")

        busy_ms = max(0, _env_int("ESP_SQLITE_BUSY_TIMEOUT_MS", int(connect_timeout_s * 1000)))
        con.execute(f"PRAGMA busy_timeout={busy_ms};")

        return con

    def init_schema(self) -> None:
        with self.write_tx() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )

            # Content-addressed records. Append-only.
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS content (
                  address TEXT PRIMARY KEY,
                  data BLOB NOT NULL,
                  size INTEGER NOT NULL,
                  created_ts_ms INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS registrations (
                  address TEXT PRIMARY KEY,
                  publisher TEXT,
                  registration_cost INTEGER NOT NULL,
                  registered_ts_ms INTEGER NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_registrations_publisher ON registrations(publisher);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS balances (
                  account TEXT PRIMARY KEY,
                  balance INTEGER NOT NULL CHECK (balance >= 0)
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS payouts (
                  payout_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account TEXT NOT NULL,
                  withdraw_to TEXT NOT NULL,
                  amount INTEGER NOT NULL,
                  created_ts_ms INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS headers (
                  header_ref TEXT PRIMARY KEY,
                  header_json TEXT NOT NULL,
                  updated_ts_ms INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS resources (
                  path TEXT PRIMARY KEY,
                  header_ref TEXT NOT NULL,
                  size INTEGER NOT NULL,
                  version INTEGER NOT NULL,
                  last_modified_ms INTEGER NOT NULL,
                  content_type TEXT NOT NULL,
                  content_length INTEGER NOT NULL,
                  deleted INTEGER NOT NULL
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS resource_chunks (
                  path TEXT NOT NULL,
                  idx INTEGER NOT NULL CHECK (idx >= 0),
                  address TEXT NOT NULL,
                  PRIMARY KEY (path, idx)
                );
                """
            )

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                  event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                  ts_ms INTEGER NOT NULL,
                  operation TEXT NOT NULL,
                  subject TEXT NOT NULL,
                  actor TEXT NOT NULL,
                  outcome TEXT NOT NULL,
                  details_json TEXT NOT NULL
                );
                """
            )
            con.execute("CREATE INDEX IF NOT EXISTS idx_events_subject ON events(subject);")

            con.execute(
                """
                CREATE TABLE IF NOT EXISTS signer_nonces (
                  signer TEXT PRIMARY KEY,
                  nonce INTEGER NOT NULL
                );
                """
            )

            row = con.execute("SELECT value FROM meta WHERE key='schema_version' LIMIT 1;").fetchone()
            if row is None:
                con.execute("INSERT INTO meta(key, value) VALUES('schema_version', ?);", (str(self.SCHEMA_VERSION),))
            else:
                try:
                    v = int(str(row["value"]))
                except ValueError:
                    v = 0
                if v != self.SCHEMA_VERSION:
                    raise RuntimeError(
                        f"sqlite schema_version mismatch: have={v} want={self.SCHEMA_VERSION}. "
                        "Refuse to start to avoid corrupting data."
                    )

    # ----------------------------
    # Transaction scoping
    # ----------------------------

    def _active(self) -> Optional[sqlite3.Connection]:
        return getattr(self._local, "con", None)

    def _active_kind(self) -> str:
        return str(getattr(self._local, "kind", "") or "")

    def in_write_tx(self) -> bool:
        return self._active() is not None and self._active_kind() == "write"

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        active = self._active()
        if active is not None:
            yield active
            return

        con = self._connect()
        try:
            yield con
        finally:
            con.close()

    def on_commit(self, fn: Callable[[], None]) -> None:
        """Run `fn` after the enclosing write transaction commits.

        Outside a write transaction `fn` runs immediately. Callbacks are
        dropped on rollback.
        """
        if not self.in_write_tx():
            fn()
            return
        hooks: List[Callable[[], None]] = self._local.hooks
        hooks.append(fn)

    @staticmethod
    def _is_locked_error(e: Exception) -> bool:
        msg = str(e).lower()
        return ("database is locked" in msg) or ("database is busy" in msg) or ("locked" in msg and "database" in msg)

    @contextmanager
    def read_tx(self) -> Iterator[sqlite3.Connection]:
        """Pin one snapshot for a sequence of reads.

        Joins an open transaction on this thread if there is one.
        """
        if self._active() is not None:
            yield self._active()  # type: ignore[misc]
            return

        with self.connection() as con:
            con.execute("BEGIN;")
            self._local.con = con
            self._local.kind = "read"
            try:
                yield con
            finally:
                self._local.con = None
                self._local.kind = ""
                con.execute("COMMIT;")

    @contextmanager
    def write_tx(self) -> Iterator[sqlite3.Connection]:
        """Open a write transaction with bounded retry on writer-lock contention.

        SQLite allows only one writer at a time; BEGIN IMMEDIATE can raise
        OperationalError while a competing writer holds the lock.

        Policy:
          - retry BEGIN IMMEDIATE until a deadline
          - exponential backoff with jitter
          - then raise (fail closed)
        """
        active = self._active()
        if active is not None:
            if self._active_kind() != "write":
                raise RuntimeError("write_tx requested inside a read-only snapshot")
            yield active
            return

        deadline_ms = max(250, _env_int("ESP_SQLITE_WRITE_DEADLINE_MS", 30_000))
        deadline_ts = _now_ms() + deadline_ms

        base_sleep = max(0.001, float(_env_int("ESP_SQLITE_WRITE_BACKOFF_BASE_MS", 5)) / 1000.0)
        max_sleep = max(base_sleep, float(_env_int("ESP_SQLITE_WRITE_BACKOFF_MAX_MS", 250)) / 1000.0)

        def _backoff(attempt: int) -> None:
            sleep_s = min(max_sleep, base_sleep * (2.0 ** min(attempt, 8)))
            time.sleep(sleep_s * (0.5 + random.random()))

        with self.connection() as con:
            attempt = 0
            while True:
                try:
                    con.execute("BEGIN IMMEDIATE;")
                    break
                except sqlite3.OperationalError as e:
                    if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                        raise
                    _backoff(attempt)
                    attempt += 1

            self._local.con = con
            self._local.kind = "write"
            self._local.hooks = []
            try:
                yield con

                c_attempt = 0
                while True:
                    try:
                        con.execute("COMMIT;")
                        break
                    except sqlite3.OperationalError as e:
                        if not self._is_locked_error(e) or _now_ms() >= deadline_ts:
                            raise
                        _backoff(c_attempt)
                        c_attempt += 1
            except BaseException:
                try:
                    con.execute("ROLLBACK;")
                except sqlite3.Error:
                    pass
                self._local.hooks = []
                raise
            finally:
                hooks = list(getattr(self._local, "hooks", []) or [])
                self._local.con = None
                self._local.kind = ""
                self._local.hooks = []

        for fn in hooks:
            fn()
