# src/esp/ledger/pricing.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from esp.ledger.constants import (
    BPS_DENOMINATOR,
    DEFAULT_BASE_COST,
    DEFAULT_PER_BYTE_COST,
    PUBLISHER_SHARE_BPS,
)


@dataclass(frozen=True)
class CostModel:
    """Resource cost of a first write, used as the royalty tariff.

    cost = base_cost + per_byte_cost * len(data)
    """

    base_cost: int = DEFAULT_BASE_COST
    per_byte_cost: int = DEFAULT_PER_BYTE_COST

    def measure(self, size: int) -> int:
        return int(self.base_cost) + int(self.per_byte_cost) * max(0, int(size))


def split_royalty(owed: int, publisher_share_bps: int = PUBLISHER_SHARE_BPS) -> Tuple[int, int]:
    """Return (publisher_credit, protocol_retained) for an owed amount.

    Rounding goes to the protocol so the two parts always sum to `owed`.
    """
    amt = max(0, int(owed))
    share = (amt * int(publisher_share_bps)) // BPS_DENOMINATOR
    return share, amt - share
