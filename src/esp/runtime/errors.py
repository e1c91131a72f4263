from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, ClassVar, Dict, Optional

Json = Dict[str, Any]


class Status(IntEnum):
    """Response codes a web-facing adapter maps results and errors onto."""

    OK = 200
    CREATED = 201
    NO_CONTENT = 204
    PARTIAL_CONTENT = 206
    MOVED_PERMANENTLY = 301
    FOUND = 302
    SEE_OTHER = 303
    NOT_MODIFIED = 304
    TEMPORARY_REDIRECT = 307
    PERMANENT_REDIRECT = 308
    BAD_REQUEST = 400
    FORBIDDEN = 403
    NOT_FOUND = 404
    METHOD_NOT_ALLOWED = 405
    GONE = 410
    PAYLOAD_TOO_LARGE = 413
    RANGE_NOT_SATISFIABLE = 416
    INTERNAL_ERROR = 500


REDIRECT_STATUSES = frozenset(
    {
        Status.MOVED_PERMANENTLY,
        Status.FOUND,
        Status.SEE_OTHER,
        Status.TEMPORARY_REDIRECT,
        Status.PERMANENT_REDIRECT,
    }
)


@dataclass
class EspError(Exception):
    """Canonical error type for every core operation.

    `code` is the stable machine-readable category, `reason` the specific
    cause, `details` a JSON-safe payload (amounts, indices, addresses).
    Callers map `status` onto their transport.
    """

    code: str
    reason: str
    details: Optional[Json] = None

    status: ClassVar[Status] = Status.INTERNAL_ERROR

    def __str__(self) -> str:  # pragma: no cover
        if self.details is None:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Json:
        return {
            "code": self.code,
            "reason": self.reason,
            "status": int(self.status),
            "details": dict(self.details or {}),
        }


# ---------------------------
# Input errors
# ---------------------------


@dataclass
class BadRequest(EspError):
    status: ClassVar[Status] = Status.BAD_REQUEST


@dataclass
class EmptyInput(BadRequest):
    pass


@dataclass
class IndexOutOfBounds(BadRequest):
    pass


@dataclass
class RangeOutOfBounds(BadRequest):
    pass


@dataclass
class RangeNotSatisfiable(EspError):
    status: ClassVar[Status] = Status.RANGE_NOT_SATISFIABLE


@dataclass
class ChunkTooLarge(EspError):
    status: ClassVar[Status] = Status.PAYLOAD_TOO_LARGE


# ---------------------------
# State errors
# ---------------------------


@dataclass
class NotFound(EspError):
    status: ClassVar[Status] = Status.NOT_FOUND


@dataclass
class ResourceGone(NotFound):
    status: ClassVar[Status] = Status.GONE


@dataclass
class AddressOccupied(EspError):
    status: ClassVar[Status] = Status.INTERNAL_ERROR


# ---------------------------
# Economic errors
# ---------------------------


@dataclass
class InsufficientRoyaltyPayment(EspError):
    status: ClassVar[Status] = Status.BAD_REQUEST

    @property
    def owed(self) -> int:
        return int((self.details or {}).get("owed", 0))


@dataclass
class InsufficientBalance(EspError):
    status: ClassVar[Status] = Status.BAD_REQUEST


# ---------------------------
# Authorization errors
# ---------------------------


@dataclass
class Unauthorized(EspError):
    status: ClassVar[Status] = Status.FORBIDDEN


@dataclass
class InvalidPublisher(BadRequest):
    pass


@dataclass
class MethodNotAllowed(EspError):
    status: ClassVar[Status] = Status.METHOD_NOT_ALLOWED


@dataclass
class BadSignature(Unauthorized):
    pass


@dataclass
class StaleNonce(Unauthorized):
    pass


# ---------------------------
# Backpressure
# ---------------------------


@dataclass
class ResourceLimitExceeded(EspError):
    status: ClassVar[Status] = Status.PAYLOAD_TOO_LARGE


__all__ = [
    "AddressOccupied",
    "BadRequest",
    "BadSignature",
    "ChunkTooLarge",
    "EmptyInput",
    "EspError",
    "IndexOutOfBounds",
    "InsufficientBalance",
    "InsufficientRoyaltyPayment",
    "InvalidPublisher",
    "MethodNotAllowed",
    "NotFound",
    "REDIRECT_STATUSES",
    "RangeNotSatisfiable",
    "RangeOutOfBounds",
    "ResourceGone",
    "ResourceLimitExceeded",
    "StaleNonce",
    "Status",
    "Unauthorized",
]
