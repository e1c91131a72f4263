# src/esp/storage/content_store.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from esp.runtime import metrics
from esp.runtime.errors import AddressOccupied, BadRequest, EmptyInput, NotFound
from esp.runtime.sqlite_db import SqliteDB
from esp.runtime.structured_logging import log_event
from esp.storage.addressing import calculate_address, validate_address

_log = logging.getLogger("esp.storage")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class ContentRecord:
    address: str
    data: bytes
    size: int


class ContentStore:
    """Immutable, content-addressed byte store.

    Records are created once and never mutated or deleted here; logical
    deletion happens in the catalog by dropping references. A size of 0 is
    the "does not exist" sentinel.
    """

    def __init__(self, *, db: SqliteDB, clock: Optional[Callable[[], int]] = None) -> None:
        self._db = db
        self._clock = clock or _now_ms

    @staticmethod
    def calculate_address(data: bytes) -> str:
        return calculate_address(data)

    @staticmethod
    def validate_address(address: str) -> str:
        v = validate_address(address)
        if not v.ok:
            raise BadRequest("invalid_payload", v.reason, {"address": v.address})
        return v.address

    def write(self, data: bytes) -> str:
        if not data:
            raise EmptyInput("invalid_payload", "empty_data", {})

        payload = bytes(data)
        address = calculate_address(payload)

        with self._db.write_tx() as con:
            row = con.execute("SELECT data FROM content WHERE address=?;", (address,)).fetchone()
            if row is not None:
                if bytes(row["data"]) != payload:
                    raise AddressOccupied("invalid_state", "address_occupied", {"address": address})
                self._db.on_commit(lambda: metrics.inc_counter("content_dedup_hits"))
                return address

            con.execute(
                "INSERT INTO content(address, data, size, created_ts_ms) VALUES(?, ?, ?, ?);",
                (address, payload, len(payload), int(self._clock())),
            )
            self._db.on_commit(lambda: self._written(address, len(payload)))

        return address

    @staticmethod
    def _written(address: str, size: int) -> None:
        metrics.inc_counter("content_writes")
        metrics.inc_counter("content_bytes_written", size)
        log_event(_log, "content_write", level=logging.DEBUG, address=address, size=size)

    def read(self, address: str) -> bytes:
        a = self.validate_address(address)
        with self._db.connection() as con:
            row = con.execute("SELECT data FROM content WHERE address=?;", (a,)).fetchone()
        if row is None:
            raise NotFound("not_found", "content_missing", {"address": a})
        metrics.inc_counter("chunk_reads")
        return bytes(row["data"])

    def size(self, address: str) -> int:
        a = self.validate_address(address)
        with self._db.connection() as con:
            row = con.execute("SELECT size FROM content WHERE address=?;", (a,)).fetchone()
        return int(row["size"]) if row is not None else 0

    def exists(self, address: str) -> bool:
        return self.size(address) > 0

    def record(self, address: str) -> ContentRecord:
        data = self.read(address)
        return ContentRecord(address=self.validate_address(address), data=data, size=len(data))

    def verify(self, address: str) -> bool:
        """Re-hash stored bytes and compare with their address."""
        return calculate_address(self.read(address)) == self.validate_address(address)


__all__ = ["ContentRecord", "ContentStore"]
