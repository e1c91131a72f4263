# src/esp/runtime/engine.py

from __future__ import annotations

from typing import Callable, Optional

from esp.config import EngineConfig, load_engine_config
from esp.delivery.assembler import RangeAssembler
from esp.env import load_dotenv_if_present
from esp.ledger.pricing import CostModel
from esp.ledger.royalty import RoyaltyLedger
from esp.resources.catalog import ResourceCatalog
from esp.runtime.events import EventLog
from esp.runtime.gates import AllowAllGate, AuthorizationGate, PolicyGate
from esp.runtime.sqlite_db import SqliteDB
from esp.runtime.structured_logging import configure_structured_logging
from esp.storage.content_store import ContentStore


class Engine:
    """One database handle plus the components wired on top of it.

    Components never reach each other through globals; each receives its
    collaborators here and nowhere else.
    """

    def __init__(
        self,
        *,
        cfg: EngineConfig,
        gate: Optional[AuthorizationGate] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.cfg = cfg
        self.gate: AuthorizationGate = gate or _gate_from_config(cfg)

        self.db = SqliteDB(path=cfg.db_path, mode=cfg.mode)
        self.db.init_schema()

        self.events = EventLog(db=self.db, clock=clock)
        self.store = ContentStore(db=self.db, clock=clock)
        self.ledger = RoyaltyLedger(
            db=self.db,
            store=self.store,
            events=self.events,
            gate=self.gate,
            cost_model=CostModel(base_cost=cfg.base_cost, per_byte_cost=cfg.per_byte_cost),
            publisher_share_bps=cfg.publisher_share_bps,
            protocol_account=cfg.protocol_account,
            clock=clock,
        )
        self.catalog = ResourceCatalog(
            db=self.db,
            ledger=self.ledger,
            events=self.events,
            gate=self.gate,
            max_chunk_bytes=cfg.max_chunk_bytes,
            recommended_chunk_bytes=cfg.recommended_chunk_bytes,
            clock=clock,
        )
        self.assembler = RangeAssembler(
            db=self.db,
            catalog=self.catalog,
            store=self.store,
            gate=self.gate,
            max_fetch_bytes=cfg.max_fetch_bytes,
        )


def _gate_from_config(cfg: EngineConfig) -> AuthorizationGate:
    if cfg.policy_path:
        return PolicyGate.load(cfg.policy_path)
    return AllowAllGate()


def build_engine(
    cfg: Optional[EngineConfig] = None,
    *,
    gate: Optional[AuthorizationGate] = None,
    clock: Optional[Callable[[], int]] = None,
) -> Engine:
    """
    Build an Engine from an explicit config or, if omitted, from the
    environment (.env, then ESP_CONFIG_PATH / ESP_DB_PATH).
    """
    if cfg is None:
        load_dotenv_if_present()
        cfg = load_engine_config()
    configure_structured_logging(cfg.log_level)
    return Engine(cfg=cfg, gate=gate, clock=clock)


__all__ = ["Engine", "build_engine"]
