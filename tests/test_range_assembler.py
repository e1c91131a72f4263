from __future__ import annotations

import hashlib

import pytest

from esp.delivery.assembler import RangeAssembler, resolve_byte_range
from esp.resources.types import ByteRange, ChunkRange, HeaderRecord, Method, methods_mask
from esp.runtime import metrics
from esp.runtime.errors import (
    MethodNotAllowed,
    NotFound,
    RangeNotSatisfiable,
    ResourceGone,
    ResourceLimitExceeded,
    Status,
)
from esp.runtime.gates import CallableGate, Operation

SIZES = [1000, 1000, 500]
BLOBS = [b"a" * 1000, b"b" * 1000, b"c" * 500]
WHOLE = b"".join(BLOBS)


def _reads() -> int:
    return metrics.counter("chunk_reads")


def test_hello_scenario(engine) -> None:
    engine.catalog.create_or_append_chunk("/hello.txt", b"Hello, ESP!", "P1", 0, caller="P1")

    part = engine.assembler.resolve("/hello.txt", byte_range=ByteRange(0, 4))
    assert part.data == b"Hello"
    assert part.status == Status.PARTIAL_CONTENT
    assert part.content_hash == hashlib.sha256(b"Hello").hexdigest()

    full = engine.assembler.resolve("/hello.txt", byte_range=ByteRange(0, 0))
    assert full.data == b"Hello, ESP!"
    assert len(full.data) == 11
    assert full.status == Status.OK
    assert full.total_size == 11


def test_span_across_chunk_boundary_reads_only_overlapping_chunks(engine, put) -> None:
    put(engine, "/blob", BLOBS)
    before = _reads()

    d = engine.assembler.resolve("/blob", byte_range=ByteRange(800, 1700))

    assert len(d.data) == 901
    assert d.data == WHOLE[800:1701]
    assert d.span is not None
    assert (d.span.first_chunk, d.span.last_chunk) == (0, 1)
    assert (d.span.first_offset, d.span.last_offset) == (800, 700)
    assert _reads() - before == 2
    assert d.status == Status.PARTIAL_CONTENT
    assert d.sizes == tuple(SIZES)


def test_span_touching_three_chunks_costs_three_reads(engine, put) -> None:
    put(engine, "/blob", BLOBS)
    before = _reads()

    d = engine.assembler.resolve("/blob", byte_range=ByteRange(800, 2100))

    assert d.data == WHOLE[800:2101]
    assert _reads() - before == 3


def test_full_range_matches_client_side_concatenation(engine, put) -> None:
    addrs = put(engine, "/blob", BLOBS)

    d = engine.assembler.resolve("/blob", ChunkRange(0, 0), ByteRange(0, 0))

    assert d.data == b"".join(engine.store.read(a) for a in addrs)
    assert d.status == Status.OK
    assert d.addresses == tuple(addrs)


def test_negative_byte_range_counts_from_end(engine, put) -> None:
    put(engine, "/blob", BLOBS)
    before = _reads()

    d = engine.assembler.resolve("/blob", byte_range=ByteRange(-500, -1))

    assert d.data == b"c" * 500
    assert _reads() - before == 1


def test_chunk_range_narrows_before_bytes(engine, put) -> None:
    put(engine, "/blob", BLOBS)

    d = engine.assembler.resolve("/blob", chunk_range=ChunkRange(1, 1))

    assert d.data == b"b" * 1000
    assert d.status == Status.PARTIAL_CONTENT


@pytest.mark.parametrize("rng", [ByteRange(0, 2500), ByteRange(-2501, -1), ByteRange(2000, 1000), ByteRange(2500, 0)])
def test_unsatisfiable_range_fetches_nothing(engine, put, rng) -> None:
    put(engine, "/blob", BLOBS)
    before = _reads()

    with pytest.raises(RangeNotSatisfiable) as ei:
        engine.assembler.resolve("/blob", byte_range=rng)

    assert ei.value.status == Status.RANGE_NOT_SATISFIABLE
    assert _reads() == before


def test_resolve_byte_range_is_pure() -> None:
    span = resolve_byte_range(SIZES, ByteRange(999, 1000))
    assert (span.first_chunk, span.first_offset, span.last_chunk, span.last_offset) == (0, 999, 1, 0)
    assert span.length == 2
    assert resolve_byte_range(SIZES).is_full


def test_locate_reports_sizes_without_reading(engine, put) -> None:
    addrs = put(engine, "/blob", BLOBS)
    before = _reads()

    loc = engine.assembler.locate("/blob", ChunkRange(-2, -1))

    assert loc.addresses == tuple(addrs[1:])
    assert loc.sizes == (1000, 500)
    assert loc.total_size == 1500
    assert _reads() == before


def test_conditional_requests(engine, put, clock) -> None:
    put(engine, "/blob", BLOBS)
    first = engine.assembler.resolve("/blob")
    before = _reads()

    by_etag = engine.assembler.resolve("/blob", if_none_match=first.etag)
    assert by_etag.status == Status.NOT_MODIFIED
    assert by_etag.data == b""

    meta = engine.catalog.metadata("/blob")
    by_time = engine.assembler.resolve("/blob", if_modified_since_ms=meta.last_modified_ms)
    assert by_time.status == Status.NOT_MODIFIED
    assert _reads() == before

    stale = engine.assembler.resolve("/blob", if_modified_since_ms=meta.last_modified_ms - 1)
    assert stale.status == Status.OK


def test_etag_is_the_only_conditional_token(engine, put) -> None:
    put(engine, "/blob", BLOBS)
    first = engine.assembler.resolve("/blob")
    assert first.content_hash != first.etag

    by_hash = engine.assembler.resolve("/blob", if_none_match=first.content_hash)
    assert by_hash.status == Status.OK
    assert by_hash.data == WHOLE
    assert by_hash.content_hash == first.content_hash

    before = _reads()
    assert engine.assembler.resolve("/blob", if_none_match=first.etag).status == Status.NOT_MODIFIED
    assert _reads() == before


def test_etag_changes_with_content_and_span(engine, put) -> None:
    put(engine, "/blob", BLOBS)
    full = engine.assembler.resolve("/blob")
    part = engine.assembler.resolve("/blob", byte_range=ByteRange(0, 9))
    assert full.etag != part.etag

    engine.catalog.create_or_append_chunk("/blob", b"z" * 500, "P1", 2, caller="P1")

    after = engine.assembler.resolve("/blob", if_none_match=full.etag)
    assert after.status == Status.OK
    assert after.etag != full.etag


def test_head_matches_full_etag_without_reading(engine, put) -> None:
    put(engine, "/blob", BLOBS)
    full = engine.assembler.resolve("/blob")
    before = _reads()

    info = engine.assembler.head("/blob")

    assert info.status == Status.OK
    assert info.etag == full.etag
    assert info.metadata.size == 2500
    assert info.cache_control == "max-age=0"
    assert _reads() == before


def test_redirect_header_short_circuits(engine, put) -> None:
    put(engine, "/old", [b"old body"])
    engine.catalog.define("/old", HeaderRecord(redirect_code=301, redirect_location="/new"))
    before = _reads()

    d = engine.assembler.resolve("/old")

    assert d.status == Status.MOVED_PERMANENTLY
    assert d.redirect_location == "/new"
    assert d.data == b""
    assert _reads() == before
    assert engine.assembler.head("/old").status == Status.MOVED_PERMANENTLY


def test_method_disabled_by_header(engine, put) -> None:
    put(engine, "/private", [b"secret"])
    engine.catalog.define("/private", HeaderRecord(cors_methods=methods_mask(Method.HEAD, Method.LOCATE)))

    with pytest.raises(MethodNotAllowed) as ei:
        engine.assembler.resolve("/private")
    assert ei.value.status == Status.METHOD_NOT_ALLOWED
    assert engine.assembler.head("/private").status == Status.OK


def test_gate_rejecting_locate(make_engine, put) -> None:
    eng = make_engine(gate=CallableGate(lambda caller, path, op: op != Operation.LOCATE or caller == "reader"))
    put(eng, "/x", [b"data"])

    with pytest.raises(MethodNotAllowed):
        eng.assembler.locate("/x", caller="stranger")
    with pytest.raises(MethodNotAllowed):
        eng.assembler.resolve("/x", caller="stranger")
    assert eng.assembler.resolve("/x", caller="reader").data == b"data"


def test_missing_and_deleted_paths(engine, put) -> None:
    with pytest.raises(NotFound):
        engine.assembler.resolve("/nope")

    put(engine, "/tmp", [b"t"])
    engine.catalog.delete_resource("/tmp")
    with pytest.raises(ResourceGone) as ei:
        engine.assembler.resolve("/tmp")
    assert ei.value.status == Status.GONE


def test_fetch_ceiling_fails_fast(engine, put) -> None:
    put(engine, "/blob", BLOBS)
    limited = RangeAssembler(db=engine.db, catalog=engine.catalog, store=engine.store, max_fetch_bytes=1500)
    before = _reads()

    with pytest.raises(ResourceLimitExceeded) as ei:
        limited.resolve("/blob")
    assert ei.value.details == {"requested": 2500, "max": 1500}
    assert _reads() == before

    assert limited.resolve("/blob", byte_range=ByteRange(0, 99)).data == b"a" * 100
    assert metrics.counter("range_requests") == 2
