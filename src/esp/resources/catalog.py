# src/esp/resources/catalog.py
from __future__ import annotations

"""Resource catalog.

Maps a logical path to an ordered sequence of content addresses plus
per-path metadata and a shared header record.

Key invariants:
  - chunk indices are dense from 0; a write at index == count appends,
    anything beyond is rejected (no sparse holes)
  - every chunk write goes through the royalty ledger, so the catalog never
    writes content directly
  - metadata stats (version, last_modified_ms, size, content_length) are
    refreshed after every chunk mutation
  - deleting a resource drops references only; the content store keeps the
    bytes, and a tombstone row lets deleted paths report Gone
"""

import json
import logging
import sqlite3
import time
from typing import Callable, List, Optional, Sequence, Tuple

from esp.ledger.royalty import RegistrationReceipt, RoyaltyLedger
from esp.runtime import metrics
from esp.runtime.errors import (
    BadRequest,
    ChunkTooLarge,
    EmptyInput,
    IndexOutOfBounds,
    NotFound,
    RangeOutOfBounds,
    ResourceGone,
    Unauthorized,
)
from esp.runtime.events import EventLog
from esp.runtime.gates import SITE_SCOPE, AllowAllGate, AuthorizationGate, Operation
from esp.runtime.sqlite_db import SqliteDB, _canon_json
from esp.runtime.structured_logging import log_event
from esp.resources.types import (
    DEFAULT_HEADER,
    DEFAULT_HEADER_REF,
    FULL_RANGE,
    ChunkRange,
    ChunkUpload,
    HeaderRecord,
    Resource,
    ResourceMetadata,
)

_log = logging.getLogger("esp.catalog")

DEFAULT_MAX_CHUNK_BYTES = 42 * 1024
DEFAULT_RECOMMENDED_CHUNK_BYTES = 32 * 1024


def _now_ms() -> int:
    return int(time.time() * 1000)


def _norm_path(path: str) -> str:
    p = str(path or "").strip()
    if not p or not p.startswith("/"):
        raise BadRequest("invalid_payload", "invalid_path", {"path": p})
    return p


class ResourceCatalog:
    def __init__(
        self,
        *,
        db: SqliteDB,
        ledger: RoyaltyLedger,
        events: EventLog,
        gate: Optional[AuthorizationGate] = None,
        max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
        recommended_chunk_bytes: int = DEFAULT_RECOMMENDED_CHUNK_BYTES,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._db = db
        self._ledger = ledger
        self._events = events
        self._gate = gate or AllowAllGate()
        self._max_chunk_bytes = int(max_chunk_bytes)
        self._recommended_chunk_bytes = int(recommended_chunk_bytes)
        self._clock = clock or _now_ms

    # ----------------------------
    # Internal helpers
    # ----------------------------

    def _require(self, caller: Optional[str], path: str, op: Operation) -> None:
        if not self._gate.can_invoke(caller, path, op):
            raise Unauthorized("forbidden", "not_permitted", {"operation": op.value})

    def _check_chunk(self, path: str, data: bytes, index: int) -> None:
        n = len(data or b"")
        if n == 0:
            raise EmptyInput("invalid_payload", "empty_chunk", {"path": path, "index": index})
        if n > self._max_chunk_bytes:
            raise ChunkTooLarge(
                "invalid_payload",
                "chunk_too_large",
                {"path": path, "index": index, "size": n, "max": self._max_chunk_bytes},
            )
        if n > self._recommended_chunk_bytes:
            log_event(
                _log,
                "chunk_over_recommended",
                level=logging.WARNING,
                path=path,
                index=index,
                size=n,
                recommended=self._recommended_chunk_bytes,
            )

    @staticmethod
    def _row_to_meta(row: sqlite3.Row) -> ResourceMetadata:
        return ResourceMetadata(
            path=str(row["path"]),
            header_ref=str(row["header_ref"] or ""),
            size=int(row["size"]),
            version=int(row["version"]),
            last_modified_ms=int(row["last_modified_ms"]),
            content_type=str(row["content_type"] or ""),
            content_length=int(row["content_length"]),
            deleted=bool(row["deleted"]),
        )

    def _load_meta(self, con: sqlite3.Connection, path: str) -> Optional[ResourceMetadata]:
        row = con.execute("SELECT * FROM resources WHERE path=?;", (path,)).fetchone()
        return self._row_to_meta(row) if row is not None else None

    def _live_meta(self, con: sqlite3.Connection, path: str) -> ResourceMetadata:
        meta = self._load_meta(con, path)
        if meta is None:
            raise NotFound("not_found", "resource_missing", {"path": path})
        if meta.deleted:
            raise ResourceGone("not_found", "resource_deleted", {"path": path})
        return meta

    @staticmethod
    def _count(con: sqlite3.Connection, path: str) -> int:
        row = con.execute("SELECT COUNT(*) AS n FROM resource_chunks WHERE path=?;", (path,)).fetchone()
        return int(row["n"]) if row is not None else 0

    def _ensure_meta(self, con: sqlite3.Connection, path: str, content_type: Optional[str]) -> None:
        meta = self._load_meta(con, path)
        if meta is None:
            con.execute(
                """
                INSERT INTO resources(path, header_ref, size, version, last_modified_ms,
                                      content_type, content_length, deleted)
                VALUES(?, '', 0, 0, 0, ?, 0, 0);
                """,
                (path, str(content_type or "")),
            )
            return
        if meta.deleted:
            con.execute("UPDATE resources SET deleted=0 WHERE path=?;", (path,))
        if content_type is not None:
            con.execute("UPDATE resources SET content_type=? WHERE path=?;", (str(content_type), path))

    def _header(self, con: sqlite3.Connection, header_ref: str) -> Optional[HeaderRecord]:
        row = con.execute("SELECT header_json FROM headers WHERE header_ref=?;", (header_ref,)).fetchone()
        if row is None:
            return None
        return HeaderRecord.from_json(json.loads(str(row["header_json"])))

    @staticmethod
    def _validated(header: HeaderRecord) -> HeaderRecord:
        try:
            header.validate()
        except ValueError as e:
            raise BadRequest("invalid_payload", "invalid_header", {"error": str(e)}) from e
        return header

    def _put_header(self, con: sqlite3.Connection, header_ref: str, header: HeaderRecord) -> None:
        con.execute(
            """
            INSERT INTO headers(header_ref, header_json, updated_ts_ms) VALUES(?, ?, ?)
            ON CONFLICT(header_ref) DO UPDATE SET
              header_json=excluded.header_json,
              updated_ts_ms=excluded.updated_ts_ms;
            """,
            (header_ref, _canon_json(header.to_json()), int(self._clock())),
        )

    # ----------------------------
    # Headers
    # ----------------------------

    def create_header(self, header: HeaderRecord, *, caller: Optional[str] = None) -> str:
        """Mint a header record and return its reference.

        The reference is derived from the header's content at creation time;
        minting an already-known reference leaves the stored record as is.
        """
        h = self._validated(header)
        ref = h.ref()
        with self._events.guard("create_header", ref, caller):
            self._require(caller, SITE_SCOPE, Operation.DEFINE)
            with self._db.write_tx() as con:
                if self._header(con, ref) is not None:
                    return ref
                self._put_header(con, ref, h)
                self._events.record("create_header", ref, caller)
        return ref

    def update_header(self, header_ref: str, header: HeaderRecord, *, caller: Optional[str] = None) -> None:
        h = self._validated(header)
        ref = str(header_ref or "").strip()
        with self._events.guard("update_header", ref, caller):
            self._require(caller, SITE_SCOPE, Operation.DEFINE)
            with self._db.write_tx() as con:
                if self._header(con, ref) is None:
                    raise NotFound("not_found", "header_missing", {"header_ref": ref})
                self._put_header(con, ref, h)
                self._events.record("update_header", ref, caller)

    def set_default_header(self, header: HeaderRecord, *, caller: Optional[str] = None) -> None:
        h = self._validated(header)
        with self._events.guard("set_default_header", DEFAULT_HEADER_REF, caller):
            self._require(caller, SITE_SCOPE, Operation.DEFINE)
            with self._db.write_tx() as con:
                self._put_header(con, DEFAULT_HEADER_REF, h)
                self._events.record("set_default_header", DEFAULT_HEADER_REF, caller)

    def header(self, header_ref: str) -> HeaderRecord:
        ref = str(header_ref or "").strip()
        with self._db.connection() as con:
            h = self._header(con, ref)
        if h is None:
            raise NotFound("not_found", "header_missing", {"header_ref": ref})
        return h

    def read_header(self, path: str) -> HeaderRecord:
        """Header for `path`: its own reference, else the default, else the built-in default."""
        p = _norm_path(path)
        with self._db.read_tx() as con:
            meta = self._load_meta(con, p)
            if meta is not None and not meta.deleted and meta.header_ref:
                h = self._header(con, meta.header_ref)
                if h is not None:
                    return h
            return self._header(con, DEFAULT_HEADER_REF) or DEFAULT_HEADER

    def assign_header(self, path: str, header_ref: str, *, caller: Optional[str] = None) -> None:
        p = _norm_path(path)
        ref = str(header_ref or "").strip()
        with self._events.guard("assign_header", p, caller):
            self._require(caller, p, Operation.DEFINE)
            with self._db.write_tx() as con:
                self._live_meta(con, p)
                if self._header(con, ref) is None:
                    raise NotFound("not_found", "header_missing", {"header_ref": ref})
                con.execute("UPDATE resources SET header_ref=? WHERE path=?;", (ref, p))
                self.update_metadata_stats(p)
                self._events.record("assign_header", p, caller, header_ref=ref)

    def define(self, path: str, header: HeaderRecord, *, caller: Optional[str] = None) -> str:
        """Create a header record and attach it to an existing resource in one step."""
        p = _norm_path(path)
        with self._events.guard("define", p, caller):
            with self._db.write_tx():
                ref = self.create_header(header, caller=caller)
                self.assign_header(p, ref, caller=caller)
        return ref

    # ----------------------------
    # Chunk writes
    # ----------------------------

    def create_or_append_chunk(
        self,
        path: str,
        data: bytes,
        publisher: Optional[str],
        chunk_index: int,
        *,
        caller: Optional[str] = None,
        payment: int = 0,
        content_type: Optional[str] = None,
    ) -> RegistrationReceipt:
        p = _norm_path(path)
        idx = int(chunk_index)

        with self._events.guard("write_chunk", p, caller):
            self._check_chunk(p, data, idx)
            self._require(caller, p, Operation.PATCH)

            with self._db.write_tx() as con:
                count = self._count(con, p)
                if idx < 0 or idx > count:
                    raise IndexOutOfBounds(
                        "invalid_payload",
                        "chunk_index_out_of_bounds",
                        {"path": p, "index": idx, "count": count},
                    )

                receipt = self._ledger.register(data, publisher, caller=caller, payment=payment)

                self._ensure_meta(con, p, content_type)
                con.execute(
                    """
                    INSERT INTO resource_chunks(path, idx, address) VALUES(?, ?, ?)
                    ON CONFLICT(path, idx) DO UPDATE SET address=excluded.address;
                    """,
                    (p, idx, receipt.address),
                )
                self.update_metadata_stats(p)
                self._events.record(
                    "write_chunk",
                    p,
                    caller,
                    index=idx,
                    address=receipt.address,
                    appended=(idx == count),
                )
                self._db.on_commit(lambda: metrics.inc_counter("chunk_writes"))

        return receipt

    def upload_batch(
        self,
        path: str,
        chunks: Sequence[ChunkUpload],
        *,
        caller: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Tuple[RegistrationReceipt, ...]:
        """Replace the whole chunk array of `path` with `chunks`, in order from index 0."""
        p = _norm_path(path)
        items = list(chunks or [])

        with self._events.guard("upload_batch", p, caller):
            if not items:
                raise EmptyInput("invalid_payload", "empty_batch", {"path": p})
            for i, c in enumerate(items):
                self._check_chunk(p, c.data, i)
            self._require(caller, p, Operation.PUT)

            receipts: List[RegistrationReceipt] = []
            with self._db.write_tx() as con:
                con.execute("DELETE FROM resource_chunks WHERE path=?;", (p,))
                for i, c in enumerate(items):
                    r = self._ledger.register(c.data, c.publisher, caller=caller, payment=int(c.payment))
                    con.execute(
                        "INSERT INTO resource_chunks(path, idx, address) VALUES(?, ?, ?);",
                        (p, i, r.address),
                    )
                    receipts.append(r)

                self._ensure_meta(con, p, content_type)
                self.update_metadata_stats(p)
                self._events.record("upload_batch", p, caller, chunks=len(receipts))
                self._db.on_commit(lambda: metrics.inc_counter("chunk_writes", len(receipts)))

        return tuple(receipts)

    def update_metadata_stats(self, path: str) -> ResourceMetadata:
        """Bump version, refresh last_modified_ms and recompute size / chunk count."""
        p = _norm_path(path)
        with self._db.write_tx() as con:
            meta = self._live_meta(con, p)
            row = con.execute(
                """
                SELECT COUNT(rc.idx) AS n, COALESCE(SUM(c.size), 0) AS total
                FROM resource_chunks rc JOIN content c ON c.address = rc.address
                WHERE rc.path=?;
                """,
                (p,),
            ).fetchone()
            n = int(row["n"]) if row is not None else 0
            total = int(row["total"]) if row is not None else 0
            now = int(self._clock())
            con.execute(
                """
                UPDATE resources SET size=?, version=?, last_modified_ms=?, content_length=?
                WHERE path=?;
                """,
                (total, meta.version + 1, now, n, p),
            )
            out = self._load_meta(con, p)
        assert out is not None
        return out

    def delete_resource(self, path: str, *, caller: Optional[str] = None) -> None:
        """Drop the path's chunk references and zero its metadata.

        Content records stay in the store; anyone holding an address can
        still read the bytes.
        """
        p = _norm_path(path)
        with self._events.guard("delete_resource", p, caller):
            self._require(caller, p, Operation.DELETE)
            with self._db.write_tx() as con:
                meta = self._live_meta(con, p)
                con.execute("DELETE FROM resource_chunks WHERE path=?;", (p,))
                z = meta.zeroed()
                con.execute(
                    """
                    UPDATE resources SET header_ref=?, size=?, version=?, last_modified_ms=?,
                                         content_type=?, content_length=?, deleted=1
                    WHERE path=?;
                    """,
                    (z.header_ref, z.size, z.version, z.last_modified_ms, z.content_type, z.content_length, p),
                )
                self._events.record("delete_resource", p, caller, chunks=meta.content_length)

    # ----------------------------
    # Reads
    # ----------------------------

    def metadata(self, path: str) -> ResourceMetadata:
        p = _norm_path(path)
        with self._db.connection() as con:
            return self._live_meta(con, p)

    def chunk_count(self, path: str) -> int:
        p = _norm_path(path)
        with self._db.connection() as con:
            return self._count(con, p)

    def read_chunks(self, path: str, chunk_range: ChunkRange = FULL_RANGE) -> Tuple[str, ...]:
        """Ordered chunk addresses of `path` within an inclusive chunk range.

        (0, 0) selects every chunk; negative indices count from the end.
        """
        p = _norm_path(path)
        with self._db.read_tx() as con:
            self._live_meta(con, p)
            count = self._count(con, p)
            start, end = chunk_range.normalize(count)
            if not (0 <= start <= end <= count - 1):
                raise RangeOutOfBounds(
                    "invalid_payload",
                    "chunk_range_out_of_bounds",
                    {"path": p, "start": chunk_range.start, "end": chunk_range.end, "count": count},
                )
            rows = con.execute(
                "SELECT address FROM resource_chunks WHERE path=? AND idx BETWEEN ? AND ? ORDER BY idx ASC;",
                (p, start, end),
            ).fetchall()
        return tuple(str(r["address"]) for r in rows)

    def resource(self, path: str) -> Resource:
        return Resource(path=_norm_path(path), chunks=self.read_chunks(path, FULL_RANGE))


__all__ = [
    "DEFAULT_MAX_CHUNK_BYTES",
    "DEFAULT_RECOMMENDED_CHUNK_BYTES",
    "ResourceCatalog",
]
