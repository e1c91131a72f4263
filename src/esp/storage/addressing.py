# src/esp/storage/addressing.py
from __future__ import annotations

"""Content address helpers.

An address is SHA-256 over the payload followed by a one-byte format tag,
rendered as 0x-prefixed lowercase hex:

    address = "0x" + sha256(data || FORMAT_VERSION).hexdigest()

The format tag keeps addresses from different encodings of the store
disjoint; bumping it is a breaking change for every stored record.
"""

import hashlib
import re
from dataclasses import dataclass

FORMAT_VERSION: bytes = b"\x02"

ADDRESS_HEX_LEN = 64
_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{64}$")


@dataclass(frozen=True)
class AddressValidation:
    ok: bool
    reason: str
    address: str


def calculate_address(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(bytes(data))
    h.update(FORMAT_VERSION)
    return "0x" + h.hexdigest()


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


def validate_address(address: str) -> AddressValidation:
    a = normalize_address(address)
    if not a:
        return AddressValidation(False, "missing_address", "")
    if not _ADDRESS_RE.match(a):
        return AddressValidation(False, "invalid_address_format", a)
    return AddressValidation(True, "ok", a)


def fingerprint(data: bytes) -> str:
    """Plain SHA-256 of assembled bytes, used for caller-side integrity checks."""
    return hashlib.sha256(bytes(data)).hexdigest()
