# src/esp/resources/types.py
from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

Json = Dict[str, Any]

PUBLIC_ORIGIN = "public"


class Method(IntEnum):
    """Resource methods; the value is the bit position in a cors bitmask."""

    HEAD = 0
    GET = 1
    POST = 2
    PUT = 3
    PATCH = 4
    DELETE = 5
    OPTIONS = 6
    LOCATE = 7
    DEFINE = 8

    @property
    def bit(self) -> int:
        return 1 << int(self)


METHOD_COUNT = len(Method)
ALL_METHODS_MASK = (1 << METHOD_COUNT) - 1
READ_METHODS_MASK = Method.HEAD.bit | Method.GET.bit | Method.OPTIONS.bit | Method.LOCATE.bit


def methods_mask(*methods: Method) -> int:
    mask = 0
    for m in methods:
        mask |= Method(m).bit
    return mask


_REDIRECT_CODES = {0, 301, 302, 303, 307, 308}


@dataclass(frozen=True)
class HeaderRecord:
    """Shared CORS / cache / redirect configuration for one or more resources.

    `origins` holds one capability ref per Method, indexed by Method value.
    """

    cors_methods: int = READ_METHODS_MASK
    origins: Tuple[str, ...] = (PUBLIC_ORIGIN,) * METHOD_COUNT
    cache_max_age: int = 0
    immutable: bool = False
    redirect_code: int = 0
    redirect_location: str = ""

    def validate(self) -> None:
        if not 0 <= int(self.cors_methods) <= ALL_METHODS_MASK:
            raise ValueError(f"cors_methods must be within 0..{ALL_METHODS_MASK}")
        if len(self.origins) != METHOD_COUNT:
            raise ValueError(f"origins must carry exactly {METHOD_COUNT} entries")
        if int(self.cache_max_age) < 0:
            raise ValueError("cache_max_age must be >= 0")
        if int(self.redirect_code) not in _REDIRECT_CODES:
            raise ValueError(f"redirect_code must be one of {sorted(_REDIRECT_CODES)}")
        if int(self.redirect_code) and not str(self.redirect_location).strip():
            raise ValueError("redirect_code requires redirect_location")

    def allows(self, method: Method) -> bool:
        return bool(int(self.cors_methods) & Method(method).bit)

    def origin_for(self, method: Method) -> str:
        return str(self.origins[int(method)])

    @property
    def is_redirect(self) -> bool:
        return int(self.redirect_code) != 0

    def cache_control(self) -> str:
        parts = [f"max-age={int(self.cache_max_age)}"]
        if self.immutable:
            parts.append("immutable")
        return ", ".join(parts)

    def to_json(self) -> Json:
        return {
            "cors_methods": int(self.cors_methods),
            "origins": list(self.origins),
            "cache_max_age": int(self.cache_max_age),
            "immutable": bool(self.immutable),
            "redirect_code": int(self.redirect_code),
            "redirect_location": str(self.redirect_location),
        }

    @classmethod
    def from_json(cls, j: Any) -> "HeaderRecord":
        if not isinstance(j, dict):
            raise ValueError("header record must be an object")
        d = cls()
        origins = j.get("origins", list(d.origins))
        return cls(
            cors_methods=int(j.get("cors_methods", d.cors_methods)),
            origins=tuple(str(o) for o in origins),
            cache_max_age=int(j.get("cache_max_age", d.cache_max_age)),
            immutable=bool(j.get("immutable", d.immutable)),
            redirect_code=int(j.get("redirect_code", d.redirect_code)),
            redirect_location=str(j.get("redirect_location", d.redirect_location) or ""),
        )

    def ref(self) -> str:
        """Stable reference minted from the header's canonical encoding."""
        raw = json.dumps(self.to_json(), sort_keys=True, separators=(",", ":")).encode("utf-8")
        return "hdr_" + hashlib.sha256(raw).hexdigest()[:32]


DEFAULT_HEADER = HeaderRecord()
DEFAULT_HEADER_REF = "default"


@dataclass(frozen=True)
class ResourceMetadata:
    """Per-path metadata. `size` is total bytes, `content_length` the chunk count."""

    path: str
    header_ref: str = ""
    size: int = 0
    version: int = 0
    last_modified_ms: int = 0
    content_type: str = ""
    content_length: int = 0
    deleted: bool = False

    @property
    def exists(self) -> bool:
        return not self.deleted and self.content_length > 0

    def zeroed(self) -> "ResourceMetadata":
        return replace(
            self,
            header_ref="",
            size=0,
            version=0,
            last_modified_ms=0,
            content_type="",
            content_length=0,
            deleted=True,
        )


@dataclass(frozen=True)
class Resource:
    path: str
    chunks: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Range:
    """Inclusive start/end; negative counts from the end, end 0 means "through the last"."""

    start: int = 0
    end: int = 0

    @property
    def is_full(self) -> bool:
        return int(self.start) == 0 and int(self.end) == 0

    def normalize(self, length: int) -> Tuple[int, int]:
        """Resolve to absolute inclusive indices against `length` (not bounds-checked)."""
        n = int(length)
        s = int(self.start)
        e = int(self.end)
        if s < 0:
            s = n + s
        if e < 0:
            e = n + e
        elif e == 0:
            e = n - 1
        return s, e


ChunkRange = Range
ByteRange = Range

FULL_RANGE = Range(0, 0)


@dataclass(frozen=True)
class ChunkUpload:
    data: bytes
    publisher: Optional[str] = None
    payment: int = 0
