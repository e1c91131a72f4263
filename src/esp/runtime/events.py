# src/esp/runtime/events.py
from __future__ import annotations

"""Operation notifications.

Every mutating operation produces one notification
{operation, subject, actor, outcome, details}:

  - successes are persisted in the `events` table inside the operation's own
    write transaction and logged as JSONL once that transaction commits;
  - rejections are logged with outcome "rejected:<code>" and are not
    persisted (the rolled-back transaction leaves no row). A composite
    operation logs one rejection, under its own name, not one per nested step.

The persisted table is the only way to enumerate historical activity; there
is no "list all paths" query.
"""

import json
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from esp.runtime.errors import EspError
from esp.runtime.sqlite_db import SqliteDB, _canon_json
from esp.runtime.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("esp.events")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Event:
    event_id: int
    ts_ms: int
    operation: str
    subject: str
    actor: str
    outcome: str
    details: Json = field(default_factory=dict)


class EventLog:
    def __init__(self, *, db: SqliteDB, clock: Optional[Callable[[], int]] = None) -> None:
        self._db = db
        self._clock = clock or _now_ms

    def record(self, operation: str, subject: str, actor: Optional[str], outcome: str = "ok", **details: Any) -> None:
        ts = int(self._clock())
        actor_s = str(actor or "")
        with self._db.write_tx() as con:
            con.execute(
                """
                INSERT INTO events(ts_ms, operation, subject, actor, outcome, details_json)
                VALUES(?, ?, ?, ?, ?, ?);
                """,
                (ts, str(operation), str(subject), actor_s, str(outcome), _canon_json(details)),
            )
            self._db.on_commit(
                lambda: log_event(
                    _log,
                    "operation",
                    operation=str(operation),
                    subject=str(subject),
                    actor=actor_s,
                    outcome=str(outcome),
                    details=details,
                )
            )

    def rejected(self, operation: str, subject: str, actor: Optional[str], err: EspError) -> None:
        log_event(
            _log,
            "operation",
            level=logging.WARNING,
            operation=str(operation),
            subject=str(subject),
            actor=str(actor or ""),
            outcome=f"rejected:{err.code}",
            details={"reason": err.reason, **dict(err.details or {})},
        )

    @contextmanager
    def guard(self, operation: str, subject: str, actor: Optional[str]) -> Iterator[None]:
        """Log a rejection notification for any EspError raised in the block.

        A guard nested inside another operation's open write transaction stays
        silent; the outermost guard reports the rejection once, under the
        operation the caller actually invoked.
        """
        try:
            yield
        except EspError as e:
            if not self._db.in_write_tx():
                self.rejected(operation, subject, actor, e)
            raise

    def history(
        self,
        *,
        subject: Optional[str] = None,
        operation: Optional[str] = None,
        since_id: int = 0,
        limit: int = 100,
    ) -> List[Event]:
        sql = "SELECT * FROM events WHERE event_id > ?"
        args: List[Any] = [int(since_id)]
        if subject is not None:
            sql += " AND subject = ?"
            args.append(str(subject))
        if operation is not None:
            sql += " AND operation = ?"
            args.append(str(operation))
        sql += " ORDER BY event_id ASC LIMIT ?;"
        args.append(max(1, int(limit)))

        with self._db.connection() as con:
            rows = con.execute(sql, tuple(args)).fetchall()

        return [
            Event(
                event_id=int(r["event_id"]),
                ts_ms=int(r["ts_ms"]),
                operation=str(r["operation"]),
                subject=str(r["subject"]),
                actor=str(r["actor"]),
                outcome=str(r["outcome"]),
                details=json.loads(str(r["details_json"])),
            )
            for r in rows
        ]


__all__ = ["Event", "EventLog"]
