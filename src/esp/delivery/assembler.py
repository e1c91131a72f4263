# src/esp/delivery/assembler.py
from __future__ import annotations

"""Byte-range delivery.

One request is a short pipeline with no state carried between calls:

  locate   -> chunk addresses + per-chunk sizes (no chunk bytes)
  resolve  -> overlapping chunks + intra-chunk offsets (pure)
  fetch    -> read only the overlapping chunks, slice, concatenate
  status   -> OK / PARTIAL_CONTENT / NOT_MODIFIED / redirect

Every step before fetch works from sizes alone, so unsatisfiable ranges,
conditional hits and oversized requests cost zero chunk reads.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from esp.resources.catalog import ResourceCatalog
from esp.resources.types import (
    FULL_RANGE,
    ByteRange,
    ChunkRange,
    HeaderRecord,
    Method,
    ResourceMetadata,
)
from esp.runtime import metrics
from esp.runtime.errors import MethodNotAllowed, RangeNotSatisfiable, ResourceLimitExceeded, Status
from esp.runtime.gates import AllowAllGate, AuthorizationGate, Operation
from esp.runtime.sqlite_db import SqliteDB
from esp.runtime.structured_logging import log_event
from esp.storage.addressing import fingerprint
from esp.storage.content_store import ContentStore

_log = logging.getLogger("esp.delivery")


@dataclass(frozen=True)
class Location:
    path: str
    addresses: Tuple[str, ...]
    sizes: Tuple[int, ...]
    total_size: int
    metadata: ResourceMetadata
    header: HeaderRecord


@dataclass(frozen=True)
class Span:
    """Absolute inclusive byte span plus where it starts and ends inside the chunk list."""

    start: int
    end: int
    total_size: int
    first_chunk: int
    last_chunk: int
    first_offset: int
    last_offset: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    @property
    def is_full(self) -> bool:
        return self.start == 0 and self.end == self.total_size - 1

    @property
    def chunk_count(self) -> int:
        return self.last_chunk - self.first_chunk + 1


@dataclass(frozen=True)
class Delivery:
    path: str
    status: Status
    data: bytes = b""
    content_hash: str = ""
    etag: str = ""
    addresses: Tuple[str, ...] = field(default_factory=tuple)
    sizes: Tuple[int, ...] = field(default_factory=tuple)
    span: Optional[Span] = None
    total_size: int = 0
    content_type: str = ""
    cache_control: str = ""
    redirect_location: str = ""


@dataclass(frozen=True)
class HeadInfo:
    path: str
    status: Status
    metadata: ResourceMetadata
    header: HeaderRecord
    etag: str
    cache_control: str
    redirect_location: str = ""


def resolve_byte_range(sizes: Sequence[int], byte_range: ByteRange = FULL_RANGE) -> Span:
    """Map a byte range onto the chunk list described by `sizes`.

    Inclusive bounds, negative offsets count from the end of the content,
    (0, 0) is the whole content. Raises RangeNotSatisfiable when the span
    does not fit inside [0, total).
    """
    lens = [int(s) for s in sizes]
    total = sum(lens)
    start, end = byte_range.normalize(total)

    if total <= 0 or start < 0 or end >= total or start > end:
        raise RangeNotSatisfiable(
            "range_not_satisfiable",
            "byte_range_outside_content",
            {"start": byte_range.start, "end": byte_range.end, "total_size": total},
        )

    first_chunk = last_chunk = -1
    first_offset = last_offset = 0
    cum = 0
    for i, n in enumerate(lens):
        lo, hi = cum, cum + n - 1
        if first_chunk < 0 and lo <= start <= hi:
            first_chunk = i
            first_offset = start - lo
        if lo <= end <= hi:
            last_chunk = i
            last_offset = end - lo
            break
        cum += n

    return Span(
        start=start,
        end=end,
        total_size=total,
        first_chunk=first_chunk,
        last_chunk=last_chunk,
        first_offset=first_offset,
        last_offset=last_offset,
    )


def compute_etag(metadata: ResourceMetadata, addresses: Sequence[str], start: int, end: int) -> str:
    """Fingerprint of what a response would contain, computed without reading chunk bytes."""
    raw = "|".join(
        [
            metadata.path,
            str(int(metadata.version)),
            ",".join(addresses),
            f"{int(start)}-{int(end)}",
        ]
    )
    return '"' + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32] + '"'


class RangeAssembler:
    def __init__(
        self,
        *,
        db: SqliteDB,
        catalog: ResourceCatalog,
        store: ContentStore,
        gate: Optional[AuthorizationGate] = None,
        max_fetch_bytes: int = 0,
    ) -> None:
        self._db = db
        self._catalog = catalog
        self._store = store
        self._gate = gate or AllowAllGate()
        self._max_fetch_bytes = int(max_fetch_bytes)

    def _check_gate(self, caller: Optional[str], path: str, op: Operation) -> None:
        if not self._gate.can_invoke(caller, path, op):
            raise MethodNotAllowed("method_not_allowed", "not_permitted", {"operation": op.value})

    @staticmethod
    def _check_header(header: HeaderRecord, method: Method) -> None:
        if not header.allows(method):
            raise MethodNotAllowed("method_not_allowed", "method_disabled", {"method": method.name})

    def locate(
        self,
        path: str,
        chunk_range: ChunkRange = FULL_RANGE,
        *,
        caller: Optional[str] = None,
        method: Method = Method.LOCATE,
    ) -> Location:
        self._check_gate(caller, path, Operation.LOCATE)
        with self._db.read_tx():
            meta = self._catalog.metadata(path)
            header = self._catalog.read_header(path)
            self._check_header(header, method)
            addresses = self._catalog.read_chunks(path, chunk_range)
            sizes = tuple(self._store.size(a) for a in addresses)
        return Location(
            path=meta.path,
            addresses=addresses,
            sizes=sizes,
            total_size=sum(sizes),
            metadata=meta,
            header=header,
        )

    def resolve_byte_range(self, sizes: Sequence[int], byte_range: ByteRange = FULL_RANGE) -> Span:
        return resolve_byte_range(sizes, byte_range)

    def resolve(
        self,
        path: str,
        chunk_range: ChunkRange = FULL_RANGE,
        byte_range: ByteRange = FULL_RANGE,
        *,
        caller: Optional[str] = None,
        if_none_match: Optional[str] = None,
        if_modified_since_ms: Optional[int] = None,
    ) -> Delivery:
        """Assemble the requested span from the chunks that overlap it.

        `Delivery.etag` is the conditional token: pass a previous etag as
        `if_none_match` to get NOT_MODIFIED without reading chunk bytes.
        `Delivery.content_hash` hashes the assembled bytes and is only known
        after a fetch, so it never matches `if_none_match`.
        """
        metrics.inc_counter("range_requests")

        with self._db.read_tx():
            loc = self.locate(path, chunk_range, caller=caller, method=Method.GET)
            meta = loc.metadata
            header = loc.header

            if header.is_redirect:
                metrics.inc_counter("redirects")
                return Delivery(
                    path=loc.path,
                    status=Status(int(header.redirect_code)),
                    redirect_location=header.redirect_location,
                    cache_control=header.cache_control(),
                )

            span = resolve_byte_range(loc.sizes, byte_range)
            etag = compute_etag(meta, loc.addresses, span.start, span.end)

            if self._not_modified(meta, etag, if_none_match, if_modified_since_ms):
                metrics.inc_counter("not_modified")
                return Delivery(
                    path=loc.path,
                    status=Status.NOT_MODIFIED,
                    etag=etag,
                    addresses=loc.addresses,
                    sizes=loc.sizes,
                    span=span,
                    total_size=loc.total_size,
                    content_type=meta.content_type,
                    cache_control=header.cache_control(),
                )

            fetch_bytes = sum(loc.sizes[span.first_chunk : span.last_chunk + 1])
            if self._max_fetch_bytes > 0 and fetch_bytes > self._max_fetch_bytes:
                raise ResourceLimitExceeded(
                    "resource_limit",
                    "max_fetch_bytes_exceeded",
                    {"requested": fetch_bytes, "max": self._max_fetch_bytes},
                )

            data = self._fetch(loc, span)

        full = span.is_full and len(loc.addresses) == meta.content_length
        status = Status.OK if full else Status.PARTIAL_CONTENT

        metrics.inc_counter("bytes_served", len(data))
        log_event(
            _log,
            "range_resolved",
            level=logging.DEBUG,
            path=loc.path,
            start=span.start,
            end=span.end,
            chunks_read=span.chunk_count,
            status=int(status),
        )

        return Delivery(
            path=loc.path,
            status=status,
            data=data,
            content_hash=fingerprint(data),
            etag=etag,
            addresses=loc.addresses,
            sizes=loc.sizes,
            span=span,
            total_size=loc.total_size,
            content_type=meta.content_type,
            cache_control=header.cache_control(),
        )

    @staticmethod
    def _not_modified(
        meta: ResourceMetadata,
        etag: str,
        if_none_match: Optional[str],
        if_modified_since_ms: Optional[int],
    ) -> bool:
        if if_none_match is not None and str(if_none_match).strip() == etag:
            return True
        if if_modified_since_ms is not None and int(if_modified_since_ms) >= int(meta.last_modified_ms):
            return True
        return False

    def _fetch(self, loc: Location, span: Span) -> bytes:
        parts: List[bytes] = []
        for i in range(span.first_chunk, span.last_chunk + 1):
            chunk = self._store.read(loc.addresses[i])
            lo = span.first_offset if i == span.first_chunk else 0
            hi = span.last_offset if i == span.last_chunk else len(chunk) - 1
            parts.append(chunk[lo : hi + 1])
        return b"".join(parts)

    def head(self, path: str, *, caller: Optional[str] = None) -> HeadInfo:
        """Metadata, header and etag of the full resource, without touching chunk bytes."""
        self._check_gate(caller, path, Operation.HEAD)
        with self._db.read_tx():
            meta = self._catalog.metadata(path)
            header = self._catalog.read_header(path)
            self._check_header(header, Method.HEAD)
            addresses = self._catalog.read_chunks(path, FULL_RANGE)

        status = Status(int(header.redirect_code)) if header.is_redirect else Status.OK
        return HeadInfo(
            path=meta.path,
            status=status,
            metadata=meta,
            header=header,
            etag=compute_etag(meta, addresses, 0, meta.size - 1),
            cache_control=header.cache_control(),
            redirect_location=header.redirect_location if header.is_redirect else "",
        )


__all__ = [
    "Delivery",
    "HeadInfo",
    "Location",
    "RangeAssembler",
    "Span",
    "compute_etag",
    "resolve_byte_range",
]
