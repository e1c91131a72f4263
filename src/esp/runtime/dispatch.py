# src/esp/runtime/dispatch.py

from __future__ import annotations

"""Signed operation envelopes.

An envelope names one mutating operation, the signer acting as caller, a
per-signer nonce and a JSON payload. `execute` checks the signature (when the
engine requires signatures), advances the signer's nonce and applies the
operation, all in one write transaction: a rejected operation leaves the
nonce where it was.

Binary payload fields travel hex-encoded (`data_hex`).
"""

from dataclasses import asdict, dataclass, field, is_dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List

from esp.crypto.sig import canonical_op_message, sign_ed25519, verify_ed25519_signature
from esp.resources.types import ChunkUpload, HeaderRecord
from esp.runtime.errors import BadRequest, BadSignature, StaleNonce

if TYPE_CHECKING:
    from esp.runtime.engine import Engine

Json = Dict[str, Any]


@dataclass(frozen=True)
class OpEnvelope:
    op: str
    signer: str
    nonce: int
    payload: Json = field(default_factory=dict)
    sig: str = ""

    @staticmethod
    def from_json(j: Any) -> "OpEnvelope":
        if isinstance(j, OpEnvelope):
            return j
        if not isinstance(j, dict):
            raise BadRequest("invalid_envelope", "envelope_not_object", {})
        try:
            nonce = int(j.get("nonce", 0))
        except (TypeError, ValueError) as e:
            raise BadRequest("invalid_envelope", "bad_nonce", {"nonce": j.get("nonce")}) from e
        payload = j.get("payload") or {}
        if not isinstance(payload, dict):
            raise BadRequest("invalid_envelope", "payload_not_object", {})
        return OpEnvelope(
            op=str(j.get("op", "") or "").strip().lower(),
            signer=str(j.get("signer", "") or "").strip(),
            nonce=nonce,
            payload=dict(payload),
            sig=str(j.get("sig", "") or ""),
        )

    def to_json(self) -> Json:
        return {
            "op": self.op,
            "signer": self.signer,
            "nonce": self.nonce,
            "payload": self.payload,
            "sig": self.sig,
        }

    def message(self) -> bytes:
        return canonical_op_message(op=self.op, signer=self.signer, nonce=self.nonce, payload=self.payload)

    def signed(self, privkey: str) -> "OpEnvelope":
        return OpEnvelope(
            op=self.op,
            signer=self.signer,
            nonce=self.nonce,
            payload=self.payload,
            sig=sign_ed25519(message=self.message(), privkey=privkey),
        )


# ----------------------------
# Payload helpers
# ----------------------------


def _req(payload: Json, key: str) -> Any:
    v = payload.get(key)
    if v is None or (isinstance(v, str) and not v.strip()):
        raise BadRequest("invalid_payload", f"missing_{key}", {})
    return v


def _hex(payload: Json, key: str = "data_hex") -> bytes:
    raw = str(_req(payload, key))
    try:
        return bytes.fromhex(raw)
    except ValueError as e:
        raise BadRequest("invalid_payload", f"bad_{key}", {}) from e


def _int(payload: Json, key: str, default: int = 0) -> int:
    v = payload.get(key, default)
    try:
        return int(v)
    except (TypeError, ValueError) as e:
        raise BadRequest("invalid_payload", f"bad_{key}", {key: v}) from e


def _header(payload: Json) -> HeaderRecord:
    try:
        return HeaderRecord.from_json(_req(payload, "header"))
    except (TypeError, ValueError) as e:
        raise BadRequest("invalid_payload", "bad_header", {"error": str(e)}) from e


def _result(obj: Any) -> Json:
    if is_dataclass(obj) and not isinstance(obj, type):
        return asdict(obj)
    if isinstance(obj, dict):
        return obj
    if obj is None:
        return {}
    return {"value": obj}


# ----------------------------
# Operation handlers
# ----------------------------

OpFn = Callable[["Engine", str, Json], Any]


def _op_register(engine: "Engine", caller: str, p: Json) -> Any:
    return engine.ledger.register(_hex(p), p.get("publisher"), caller=caller, payment=_int(p, "payment"))


def _op_write_chunk(engine: "Engine", caller: str, p: Json) -> Any:
    return engine.catalog.create_or_append_chunk(
        str(_req(p, "path")),
        _hex(p),
        p.get("publisher"),
        _int(p, "chunk_index"),
        caller=caller,
        payment=_int(p, "payment"),
        content_type=p.get("content_type"),
    )


def _op_upload_batch(engine: "Engine", caller: str, p: Json) -> Any:
    raw = _req(p, "chunks")
    if not isinstance(raw, list):
        raise BadRequest("invalid_payload", "chunks_not_list", {})
    chunks: List[ChunkUpload] = []
    for c in raw:
        if not isinstance(c, dict):
            raise BadRequest("invalid_payload", "chunk_not_object", {})
        chunks.append(ChunkUpload(data=_hex(c), publisher=c.get("publisher"), payment=_int(c, "payment")))
    receipts = engine.catalog.upload_batch(
        str(_req(p, "path")), chunks, caller=caller, content_type=p.get("content_type")
    )
    return {"receipts": [asdict(r) for r in receipts]}


def _op_delete_resource(engine: "Engine", caller: str, p: Json) -> Any:
    engine.catalog.delete_resource(str(_req(p, "path")), caller=caller)
    return {"deleted": True}


def _op_create_header(engine: "Engine", caller: str, p: Json) -> Any:
    return {"header_ref": engine.catalog.create_header(_header(p), caller=caller)}


def _op_update_header(engine: "Engine", caller: str, p: Json) -> Any:
    engine.catalog.update_header(str(_req(p, "header_ref")), _header(p), caller=caller)
    return {"header_ref": str(p["header_ref"])}


def _op_set_default_header(engine: "Engine", caller: str, p: Json) -> Any:
    engine.catalog.set_default_header(_header(p), caller=caller)
    return {}


def _op_define(engine: "Engine", caller: str, p: Json) -> Any:
    return {"header_ref": engine.catalog.define(str(_req(p, "path")), _header(p), caller=caller)}


def _op_collect_royalties(engine: "Engine", caller: str, p: Json) -> Any:
    return engine.ledger.collect_royalties(_int(p, "amount"), str(_req(p, "withdraw_to")), caller=caller)


def _op_update_publisher(engine: "Engine", caller: str, p: Json) -> Any:
    engine.ledger.update_publisher(str(_req(p, "address")), p.get("new_publisher"), caller=caller)
    return {}


_OPS: Dict[str, OpFn] = {
    "register": _op_register,
    "write_chunk": _op_write_chunk,
    "upload_batch": _op_upload_batch,
    "delete_resource": _op_delete_resource,
    "create_header": _op_create_header,
    "update_header": _op_update_header,
    "set_default_header": _op_set_default_header,
    "define": _op_define,
    "collect_royalties": _op_collect_royalties,
    "update_publisher": _op_update_publisher,
}


def supported_ops() -> List[str]:
    return sorted(_OPS.keys())


# ----------------------------
# Entry point
# ----------------------------


def _verify(engine: "Engine", env: OpEnvelope) -> None:
    keys = engine.cfg.signer_keys.get(env.signer) or ()
    if not keys:
        raise BadSignature("forbidden", "unknown_signer", {"signer": env.signer})
    if not env.sig:
        raise BadSignature("forbidden", "missing_sig", {"signer": env.signer})
    msg = env.message()
    if not any(verify_ed25519_signature(message=msg, sig=env.sig, pubkey=k) for k in keys):
        raise BadSignature("forbidden", "bad_sig", {"signer": env.signer})


def execute(engine: "Engine", envelope: Any) -> Json:
    """Apply one operation envelope and return its JSON-safe result."""
    env = OpEnvelope.from_json(envelope)

    fn = _OPS.get(env.op)
    if fn is None:
        raise BadRequest("invalid_envelope", "unknown_op", {"op": env.op, "supported": supported_ops()})
    if not env.signer:
        raise BadRequest("invalid_envelope", "missing_signer", {})

    with engine.events.guard(env.op, env.signer, env.signer):
        if engine.cfg.require_signatures:
            _verify(engine, env)

        with engine.db.write_tx() as con:
            row = con.execute("SELECT nonce FROM signer_nonces WHERE signer=?;", (env.signer,)).fetchone()
            last = int(row["nonce"]) if row is not None else 0
            if env.nonce <= last:
                raise StaleNonce("forbidden", "stale_nonce", {"signer": env.signer, "nonce": env.nonce, "last": last})

            con.execute(
                """
                INSERT INTO signer_nonces(signer, nonce) VALUES(?, ?)
                ON CONFLICT(signer) DO UPDATE SET nonce=excluded.nonce;
                """,
                (env.signer, env.nonce),
            )
            out = fn(engine, env.signer, env.payload)

    return {"ok": True, "op": env.op, "nonce": env.nonce, "result": _result(out)}


__all__ = ["OpEnvelope", "execute", "supported_ops"]
