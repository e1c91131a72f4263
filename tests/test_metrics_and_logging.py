from __future__ import annotations

import json
import logging
from typing import List

import pytest

from esp.runtime import metrics
from esp.resources.types import ChunkUpload, HeaderRecord
from esp.runtime.errors import IndexOutOfBounds, InsufficientRoyaltyPayment, NotFound
from esp.runtime.structured_logging import log_event


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.lines: List[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.lines.append(record.getMessage())


def _capture(name: str) -> _ListHandler:
    h = _ListHandler()
    lg = logging.getLogger(name)
    lg.addHandler(h)
    lg.setLevel(logging.DEBUG)
    return h


def test_counters_and_prometheus_text(engine, put) -> None:
    put(engine, "/m", [b"one", b"two"])
    engine.assembler.resolve("/m")

    snap = metrics.snapshot()
    assert snap["counters"]["content_writes"] == 2
    assert snap["counters"]["chunk_writes"] == 2
    assert snap["counters"]["chunk_reads"] == 2
    assert snap["counters"]["bytes_served"] == 6

    metrics.set_gauge("open_paths", 1)
    text = metrics.format_prometheus()
    assert "# HELP esp_content_writes Content blobs newly stored.\n" in text
    assert "esp_content_writes 2\n" in text
    assert "esp_open_paths 1\n" in text


def test_log_event_emits_one_json_line() -> None:
    h = _capture("esp.test.log_event")
    log_event(logging.getLogger("esp.test.log_event"), "thing_happened", path="/a", size=3)

    assert len(h.lines) == 1
    payload = json.loads(h.lines[0])
    assert payload["event"] == "thing_happened"
    assert payload["path"] == "/a"
    assert payload["size"] == 3


def test_operation_notifications_follow_commit_and_rejection(engine) -> None:
    h = _capture("esp.events")
    engine.catalog.create_or_append_chunk("/n", b"data", "P1", 0, caller="P1")

    ok = [json.loads(line) for line in h.lines]
    assert [(e["operation"], e["outcome"]) for e in ok] == [("register", "ok"), ("write_chunk", "ok")]

    h.lines.clear()
    with pytest.raises(IndexOutOfBounds):
        engine.catalog.create_or_append_chunk("/n", b"data", "P1", 9, caller="P1")

    rejected = [json.loads(line) for line in h.lines]
    assert rejected[-1]["operation"] == "write_chunk"
    assert rejected[-1]["outcome"] == "rejected:invalid_payload"
    assert rejected[-1]["details"]["reason"] == "chunk_index_out_of_bounds"


def _counts() -> dict:
    return dict(metrics.snapshot()["counters"])


def test_rolled_back_batch_leaves_counters_untouched(engine, put) -> None:
    put(engine, "/a.txt", [b"aaaa"], publisher="P1")
    owed = engine.ledger.royalty_for(engine.store.calculate_address(b"aaaa"))
    before = _counts()

    with pytest.raises(InsufficientRoyaltyPayment):
        engine.catalog.upload_batch(
            "/b.txt",
            [
                ChunkUpload(b"never-stored", "P2"),
                ChunkUpload(b"aaaa", "P2", payment=owed),
                ChunkUpload(b"aaaa", "P2", payment=0),
            ],
            caller="P2",
        )

    after = _counts()
    for name in ("content_writes", "content_bytes_written", "royalty_payments", "royalty_units_paid", "chunk_writes"):
        assert after.get(name, 0) == before.get(name, 0), name
    assert engine.store.exists(engine.store.calculate_address(b"never-stored")) is False
    assert engine.ledger.royalty_balance("P1") == 0


def test_committed_payment_is_counted_once(engine, put) -> None:
    put(engine, "/a.txt", [b"aaaa"], publisher="P1")
    owed = engine.ledger.royalty_for(engine.store.calculate_address(b"aaaa"))

    engine.catalog.create_or_append_chunk("/copy.txt", b"aaaa", "P2", 0, caller="P2", payment=owed)

    assert metrics.counter("royalty_payments") == 1
    assert metrics.counter("royalty_units_paid") == owed
    assert metrics.counter("content_writes") == 1
    assert metrics.counter("content_dedup_hits") == 0
    assert metrics.counter("chunk_writes") == 2


def test_nested_rejection_is_logged_once(engine, put) -> None:
    put(engine, "/a.txt", [b"aaaa"], publisher="P1")
    h = _capture("esp.events")

    with pytest.raises(InsufficientRoyaltyPayment):
        engine.catalog.upload_batch("/b.txt", [ChunkUpload(b"aaaa", "P2")], caller="P2")

    lines = [json.loads(line) for line in h.lines]
    assert [(e["operation"], e["outcome"]) for e in lines] == [("upload_batch", "rejected:payment_required")]

    h.lines.clear()
    with pytest.raises(NotFound):
        engine.catalog.define("/missing", HeaderRecord(cache_max_age=5), caller="admin")

    lines = [json.loads(line) for line in h.lines]
    assert [(e["operation"], e["outcome"]) for e in lines] == [("define", "rejected:not_found")]
