from __future__ import annotations

"""Process-local storage counters.

Components bump counters inline (`inc_counter("chunk_reads")`); an operator
surface renders them with `format_prometheus`. Nothing here is persisted.
"""

import threading
import time
from typing import Dict, List


# name -> help text for the counters the engine itself emits
KNOWN_COUNTERS: Dict[str, str] = {
    "content_writes": "Content blobs newly stored.",
    "content_dedup_hits": "Writes that found identical content already stored.",
    "content_bytes_written": "Bytes of newly stored content.",
    "chunk_reads": "Chunk blobs read from the content store.",
    "chunk_writes": "Chunk slots written into resources.",
    "royalty_payments": "Re-registrations that paid a royalty.",
    "royalty_units_paid": "Royalty units charged across all payments.",
    "royalty_withdrawals": "Successful royalty collections.",
    "range_requests": "Range resolve calls.",
    "redirects": "Resolves answered with a redirect header.",
    "not_modified": "Conditional resolves answered without a body.",
    "bytes_served": "Bytes returned by resolve.",
}

_lock = threading.Lock()
_counters: Dict[str, int] = {}
_gauges: Dict[str, int] = {}
_started_ms = int(time.time() * 1000)


def _name(name: str) -> str:
    return str(name or "").strip()


def inc_counter(name: str, value: int = 1) -> None:
    n = _name(name)
    if not n:
        return
    with _lock:
        _counters[n] = _counters.get(n, 0) + int(value)


def set_gauge(name: str, value: int) -> None:
    n = _name(name)
    if not n:
        return
    with _lock:
        _gauges[n] = int(value)


def counter(name: str) -> int:
    with _lock:
        return _counters.get(_name(name), 0)


def reset() -> None:
    with _lock:
        _counters.clear()
        _gauges.clear()


def snapshot() -> dict:
    now = int(time.time() * 1000)
    with _lock:
        return {
            "ts_ms": now,
            "started_ms": _started_ms,
            "uptime_ms": now - _started_ms,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
        }


def format_prometheus(prefix: str = "esp_") -> str:
    """Prometheus text exposition, counters first, names sorted.

    Counters listed in KNOWN_COUNTERS carry a HELP line.
    """
    pre = _name(prefix) or "esp_"
    snap = snapshot()
    lines: List[str] = [
        f"# TYPE {pre}uptime_ms gauge",
        f"{pre}uptime_ms {snap['uptime_ms']}",
    ]

    for name, value in sorted(snap["counters"].items()):
        help_text = KNOWN_COUNTERS.get(name)
        if help_text:
            lines.append(f"# HELP {pre}{name} {help_text}")
        lines.append(f"# TYPE {pre}{name} counter")
        lines.append(f"{pre}{name} {value}")

    for name, value in sorted(snap["gauges"].items()):
        lines.append(f"# TYPE {pre}{name} gauge")
        lines.append(f"{pre}{name} {value}")

    return "\n".join(lines) + "\n"


__all__ = [
    "KNOWN_COUNTERS",
    "counter",
    "format_prometheus",
    "inc_counter",
    "reset",
    "set_gauge",
    "snapshot",
]
