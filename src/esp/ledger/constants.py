# src/esp/ledger/constants.py
from __future__ import annotations

"""Royalty constants.

Amounts are integer base units; the ledger never handles fractions.
"""

# Basis points (1/100 of a percent).
BPS_DENOMINATOR: int = 10_000

# Share of each royalty payment credited to the original publisher;
# the remainder is retained by the protocol account.
PUBLISHER_SHARE_BPS: int = 9_000

# Canonical protocol account id in the balances table.
PROTOCOL_ACCOUNT_ID: str = "PROTOCOL"

# Default write metering (see esp.ledger.pricing.CostModel).
DEFAULT_BASE_COST: int = 21_000
DEFAULT_PER_BYTE_COST: int = 16
