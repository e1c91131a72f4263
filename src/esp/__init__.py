# src/esp/__init__.py
"""
ESP storage core

Content-addressed storage with royalty metering, a chunked resource catalog
and byte-range delivery:
  - storage: content store + address derivation
  - ledger: publisher registrations, royalty credits and payouts
  - resources: path -> chunk list, metadata and shared header records
  - delivery: range assembly over the chunk list
  - runtime: SQLite persistence, events, gates, errors, engine wiring
"""

__version__ = "0.1.0"
