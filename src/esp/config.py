# src/esp/config.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from esp.ledger.constants import (
    BPS_DENOMINATOR,
    DEFAULT_BASE_COST,
    DEFAULT_PER_BYTE_COST,
    PROTOCOL_ACCOUNT_ID,
    PUBLISHER_SHARE_BPS,
)
from esp.resources.catalog import DEFAULT_MAX_CHUNK_BYTES, DEFAULT_RECOMMENDED_CHUNK_BYTES

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    if v is None:
        return int(default)
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


def _as_bool(v: Any, default: bool) -> bool:
    if v is None:
        return bool(default)
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _as_signer_keys(v: Any) -> Dict[str, Tuple[str, ...]]:
    """signer -> pubkeys. Accepts {"alice": "<hex>"} or {"alice": ["<hex>", ...]}."""
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise ValueError("signer_keys must be an object mapping signer -> pubkey(s)")
    out: Dict[str, Tuple[str, ...]] = {}
    for signer, keys in v.items():
        if isinstance(keys, str):
            keys = [keys]
        if not isinstance(keys, list):
            raise ValueError(f"signer_keys[{signer!r}] must be a string or list")
        out[str(signer)] = tuple(str(k).strip() for k in keys if str(k).strip())
    return out


@dataclass(frozen=True)
class EngineConfig:
    mode: str  # "dev" | "prod"

    # Single SQLite DB file path for all engine persistence.
    db_path: str

    max_chunk_bytes: int
    recommended_chunk_bytes: int
    # 0 disables the per-request fetch ceiling.
    max_fetch_bytes: int

    base_cost: int
    per_byte_cost: int
    publisher_share_bps: int
    protocol_account: str

    require_signatures: bool
    signer_keys: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    # Optional YAML authorization policy; empty means allow-all.
    policy_path: str = ""

    log_level: str = "INFO"


_ALLOWED_MODES = {"dev", "prod"}
_ALLOWED_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def validate_engine_config(cfg: EngineConfig) -> None:
    """Fail-fast validation for operator config."""

    mode = str(cfg.mode or "").strip().lower()
    if mode not in _ALLOWED_MODES:
        raise ValueError(f"mode must be one of {_ALLOWED_MODES}; got: {cfg.mode!r}")

    if not isinstance(cfg.db_path, str) or not cfg.db_path.strip():
        raise ValueError("db_path must be a non-empty string")

    if int(cfg.max_chunk_bytes) <= 0:
        raise ValueError(f"max_chunk_bytes must be > 0; got: {cfg.max_chunk_bytes}")

    if not 0 < int(cfg.recommended_chunk_bytes) <= int(cfg.max_chunk_bytes):
        raise ValueError(
            "recommended_chunk_bytes must be within 1..max_chunk_bytes; "
            f"got: {cfg.recommended_chunk_bytes} (max {cfg.max_chunk_bytes})"
        )

    if int(cfg.max_fetch_bytes) < 0:
        raise ValueError(f"max_fetch_bytes must be >= 0; got: {cfg.max_fetch_bytes}")

    if int(cfg.base_cost) < 0 or int(cfg.per_byte_cost) < 0:
        raise ValueError("base_cost and per_byte_cost must be >= 0")

    if not 0 <= int(cfg.publisher_share_bps) <= BPS_DENOMINATOR:
        raise ValueError(f"publisher_share_bps must be within 0..{BPS_DENOMINATOR}; got: {cfg.publisher_share_bps}")

    if not str(cfg.protocol_account or "").strip():
        raise ValueError("protocol_account must be a non-empty string")

    if str(cfg.log_level or "").strip().upper() not in _ALLOWED_LOG_LEVELS:
        raise ValueError(f"log_level must be one of {_ALLOWED_LOG_LEVELS}; got: {cfg.log_level!r}")

    if cfg.require_signatures and not cfg.signer_keys:
        raise ValueError("require_signatures is on but no signer_keys are configured")

    if cfg.policy_path and not Path(cfg.policy_path).is_file():
        raise ValueError(f"policy_path does not exist or is not a file: {cfg.policy_path!r}")


def default_engine_config() -> EngineConfig:
    return EngineConfig(
        mode="prod",
        db_path="./data/esp.db",
        max_chunk_bytes=DEFAULT_MAX_CHUNK_BYTES,
        recommended_chunk_bytes=DEFAULT_RECOMMENDED_CHUNK_BYTES,
        max_fetch_bytes=0,
        base_cost=DEFAULT_BASE_COST,
        per_byte_cost=DEFAULT_PER_BYTE_COST,
        publisher_share_bps=PUBLISHER_SHARE_BPS,
        protocol_account=PROTOCOL_ACCOUNT_ID,
        require_signatures=False,
        signer_keys={},
        policy_path="",
        log_level="INFO",
    )


def engine_config_from_dict(raw: Any) -> EngineConfig:
    if not isinstance(raw, dict):
        raise ValueError("engine config must be a JSON object")

    d = default_engine_config()

    cfg = EngineConfig(
        mode=_as_str(raw.get("mode"), d.mode).strip().lower(),
        db_path=_as_str(raw.get("db_path"), d.db_path),
        max_chunk_bytes=_as_int(raw.get("max_chunk_bytes"), d.max_chunk_bytes),
        recommended_chunk_bytes=_as_int(raw.get("recommended_chunk_bytes"), d.recommended_chunk_bytes),
        max_fetch_bytes=_as_int(raw.get("max_fetch_bytes"), d.max_fetch_bytes),
        base_cost=_as_int(raw.get("base_cost"), d.base_cost),
        per_byte_cost=_as_int(raw.get("per_byte_cost"), d.per_byte_cost),
        publisher_share_bps=_as_int(raw.get("publisher_share_bps"), d.publisher_share_bps),
        protocol_account=_as_str(raw.get("protocol_account"), d.protocol_account),
        require_signatures=_as_bool(raw.get("require_signatures"), d.require_signatures),
        signer_keys=_as_signer_keys(raw.get("signer_keys")),
        policy_path=str(raw.get("policy_path") or ""),
        log_level=_as_str(raw.get("log_level"), d.log_level).strip().upper(),
    )

    validate_engine_config(cfg)
    return cfg


def read_engine_config_file(path: str) -> EngineConfig:
    p = Path(path)
    raw = json.loads(p.read_text(encoding="utf-8"))
    return engine_config_from_dict(raw)


def load_engine_config(*, config_path: Optional[str] = None) -> EngineConfig:
    """File config if one is named (argument or ESP_CONFIG_PATH), else defaults.

    ESP_DB_PATH overrides db_path either way so tests and operators can point
    one config at different databases.
    """
    p = config_path or os.environ.get("ESP_CONFIG_PATH")
    cfg = read_engine_config_file(p) if p else default_engine_config()

    db_override = (os.environ.get("ESP_DB_PATH") or "").strip()
    if db_override:
        cfg = replace(cfg, db_path=db_override)

    validate_engine_config(cfg)
    return cfg


__all__ = [
    "EngineConfig",
    "default_engine_config",
    "engine_config_from_dict",
    "load_engine_config",
    "read_engine_config_file",
    "validate_engine_config",
]
