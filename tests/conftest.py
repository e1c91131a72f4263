from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Sequence

import pytest

# Ensure local "src/" takes precedence over any globally-installed "esp" package.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

src_str = str(SRC)
if src_str not in sys.path:
    sys.path.insert(0, src_str)

from esp.config import EngineConfig, default_engine_config  # noqa: E402
from esp.runtime import metrics  # noqa: E402
from esp.runtime.engine import Engine  # noqa: E402


class FakeClock:
    """Deterministic millisecond clock; every call moves time forward by `step`."""

    def __init__(self, start_ms: int = 1_700_000_000_000, step: int = 1) -> None:
        self.now = int(start_ms)
        self.step = int(step)

    def __call__(self) -> int:
        self.now += self.step
        return self.now

    def advance(self, ms: int) -> None:
        self.now += int(ms)


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_cfg(tmp_path: Path) -> EngineConfig:
    return replace(default_engine_config(), mode="dev", db_path=str(tmp_path / "esp.db"))


@pytest.fixture
def make_engine(engine_cfg: EngineConfig, clock: FakeClock) -> Callable[..., Engine]:
    def _make(**overrides) -> Engine:
        gate = overrides.pop("gate", None)
        cfg = replace(engine_cfg, **overrides) if overrides else engine_cfg
        return Engine(cfg=cfg, gate=gate, clock=clock)

    return _make


@pytest.fixture
def engine(make_engine: Callable[..., Engine]) -> Engine:
    return make_engine()


def put_resource(engine: Engine, path: str, chunks: Sequence[bytes], publisher: str = "P1") -> List[str]:
    """Write `chunks` to `path` one index at a time and return their addresses."""
    out: List[str] = []
    for i, data in enumerate(chunks):
        r = engine.catalog.create_or_append_chunk(path, data, publisher, i, caller=publisher)
        out.append(r.address)
    return out


@pytest.fixture
def put() -> Callable[..., List[str]]:
    return put_resource
