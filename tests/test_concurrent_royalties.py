from __future__ import annotations

import multiprocessing as mp
from dataclasses import replace
from pathlib import Path

from esp.config import default_engine_config
from esp.ledger.pricing import split_royalty
from esp.runtime.engine import Engine

DATA = b"shared asset"


def _engine(db_path: str) -> Engine:
    return Engine(cfg=replace(default_engine_config(), mode="dev", db_path=db_path))


def _worker(db_path: str, who: str, n: int, payment: int) -> None:
    eng = _engine(db_path)
    for _ in range(int(n)):
        eng.ledger.register(DATA, who, caller=who, payment=payment)


def test_royalty_credits_are_exact_across_processes(tmp_path: Path) -> None:
    """Concurrent re-registrations from several processes never lose a credit."""
    db_path = str(tmp_path / "esp_concurrent.db")
    eng = _engine(db_path)
    addr = eng.ledger.register(DATA, "P1", caller="P1").address
    cost = eng.ledger.royalty_for(addr)

    procs: list[mp.Process] = []
    workers = 3
    per = 20

    for i in range(workers):
        pr = mp.Process(target=_worker, args=(db_path, f"W{i}", per, cost))
        pr.start()
        procs.append(pr)

    for pr in procs:
        pr.join(60)
        assert pr.exitcode == 0

    share, proto = split_royalty(cost)
    total = workers * per
    assert eng.ledger.royalty_balance("P1") == total * share
    assert eng.ledger.protocol_balance() == total * proto
    assert len(eng.events.history(subject=addr, limit=1000)) == total + 1
