# src/esp/crypto/sig.py
from __future__ import annotations

import json
from typing import Any, Dict, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

Json = Dict[str, Any]

SEED_BYTES = 32
PUBKEY_BYTES = 32
SIG_BYTES = 64


def _hex_bytes(s: str, *, size: int, what: str) -> bytes:
    raw = str(s or "").strip().lower()
    if raw.startswith("0x"):
        raw = raw[2:]
    try:
        b = bytes.fromhex(raw)
    except ValueError as e:
        raise ValueError(f"{what} is not hex") from e
    if len(b) != size:
        raise ValueError(f"{what} must be {size} bytes; got {len(b)}")
    return b


def canonical_op_message(*, op: str, signer: str, nonce: int, payload: Json) -> bytes:
    """Bytes an operation envelope's signature covers.

    Binary payload values must already be hex-encoded by the caller; the
    message is sorted-key compact JSON so every signer produces the same bytes.
    """
    obj: Json = {
        "op": str(op),
        "signer": str(signer),
        "nonce": int(nonce),
        "payload": payload if isinstance(payload, dict) else {},
    }
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def verify_ed25519_signature(*, message: bytes, sig: str, pubkey: str) -> bool:
    """False for a malformed key or signature as well as a wrong one."""
    try:
        key = Ed25519PublicKey.from_public_bytes(_hex_bytes(pubkey, size=PUBKEY_BYTES, what="pubkey"))
        key.verify(_hex_bytes(sig, size=SIG_BYTES, what="sig"), message)
    except (InvalidSignature, ValueError):
        return False
    return True


def sign_ed25519(*, message: bytes, privkey: str) -> str:
    """Hex signature of `message` under the hex-encoded 32-byte seed `privkey`."""
    key = Ed25519PrivateKey.from_private_bytes(_hex_bytes(privkey, size=SEED_BYTES, what="privkey"))
    return key.sign(message).hex()


def generate_keypair() -> Tuple[str, str]:
    """Fresh (privkey_hex, pubkey_hex) pair for operators and tests."""
    key = Ed25519PrivateKey.generate()
    priv = key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    pub = key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return priv.hex(), pub.hex()


__all__ = [
    "canonical_op_message",
    "generate_keypair",
    "sign_ed25519",
    "verify_ed25519_signature",
]
