# src/esp/ledger/royalty.py
from __future__ import annotations

"""Royalty ledger.

Wraps the content store with publisher attribution and cost-based royalties.

Key invariants:
  - the first registration of an address captures its registration cost once;
    that cost is the perpetual royalty tariff for the address
  - a null publisher waives royalties for the address permanently
  - re-registration of content with a non-null publisher and cost > 0 requires
    payment >= tariff; 90% credits the publisher, 10% the protocol account
  - balances only move by credits and checked debits

Every economic flow is ordered checks -> effects -> notification; the
notification is only published after the enclosing transaction commits.
"""

import sqlite3
import time
from dataclasses import dataclass
from typing import Callable, Optional

from esp.ledger.constants import PROTOCOL_ACCOUNT_ID, PUBLISHER_SHARE_BPS
from esp.ledger.pricing import CostModel, split_royalty
from esp.runtime import metrics
from esp.runtime.errors import (
    BadRequest,
    EmptyInput,
    InsufficientBalance,
    InsufficientRoyaltyPayment,
    InvalidPublisher,
    NotFound,
    Unauthorized,
)
from esp.runtime.events import EventLog
from esp.runtime.gates import SITE_SCOPE, AllowAllGate, AuthorizationGate, Operation
from esp.runtime.sqlite_db import SqliteDB
from esp.storage.content_store import ContentStore


def _now_ms() -> int:
    return int(time.time() * 1000)


def _count_payment(owed: int) -> None:
    metrics.inc_counter("royalty_payments")
    metrics.inc_counter("royalty_units_paid", owed)


def _norm_id(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    s = str(v).strip()
    return s or None


@dataclass(frozen=True)
class RegistrationRecord:
    address: str
    publisher: Optional[str]
    registration_cost: int
    registered_at_ms: int


@dataclass(frozen=True)
class RegistrationReceipt:
    address: str
    created: bool
    royalty_paid: int = 0
    publisher_credit: int = 0
    protocol_credit: int = 0
    refund: int = 0


@dataclass(frozen=True)
class Payout:
    payout_id: int
    account: str
    withdraw_to: str
    amount: int
    remaining_balance: int


class RoyaltyLedger:
    def __init__(
        self,
        *,
        db: SqliteDB,
        store: ContentStore,
        events: EventLog,
        gate: Optional[AuthorizationGate] = None,
        cost_model: Optional[CostModel] = None,
        publisher_share_bps: int = PUBLISHER_SHARE_BPS,
        protocol_account: str = PROTOCOL_ACCOUNT_ID,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._db = db
        self._store = store
        self._events = events
        self._gate = gate or AllowAllGate()
        self._cost_model = cost_model or CostModel()
        self._publisher_share_bps = int(publisher_share_bps)
        self._protocol_account = str(protocol_account)
        self._clock = clock or _now_ms

    @property
    def protocol_account(self) -> str:
        return self._protocol_account

    # ----------------------------
    # Internal helpers
    # ----------------------------

    def _require(self, caller: Optional[str], subject: str, op: Operation) -> None:
        if not self._gate.can_invoke(caller, subject, op):
            raise Unauthorized("forbidden", "not_permitted", {"operation": op.value})

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> RegistrationRecord:
        pub = row["publisher"]
        return RegistrationRecord(
            address=str(row["address"]),
            publisher=str(pub) if pub is not None else None,
            registration_cost=int(row["registration_cost"]),
            registered_at_ms=int(row["registered_ts_ms"]),
        )

    @staticmethod
    def _balance(con: sqlite3.Connection, account: str) -> int:
        row = con.execute("SELECT balance FROM balances WHERE account=?;", (account,)).fetchone()
        return int(row["balance"]) if row is not None else 0

    @staticmethod
    def _credit(con: sqlite3.Connection, account: str, amount: int) -> None:
        if amount <= 0:
            return
        con.execute(
            """
            INSERT INTO balances(account, balance) VALUES(?, ?)
            ON CONFLICT(account) DO UPDATE SET balance = balance + excluded.balance;
            """,
            (account, int(amount)),
        )

    # ----------------------------
    # Registration
    # ----------------------------

    def register(
        self,
        data: bytes,
        publisher: Optional[str] = None,
        *,
        caller: Optional[str] = None,
        payment: int = 0,
    ) -> RegistrationReceipt:
        """Register bytes, paying the royalty tariff when the content is already owned."""
        if not data:
            raise EmptyInput("invalid_payload", "empty_data", {})

        address = self._store.calculate_address(data)
        pub = _norm_id(publisher)
        paid = int(payment)

        with self._events.guard("register", address, caller):
            if paid < 0:
                raise BadRequest("invalid_payload", "negative_payment", {"payment": paid})
            self._require(caller, address, Operation.REGISTER)

            with self._db.write_tx() as con:
                row = con.execute("SELECT * FROM registrations WHERE address=?;", (address,)).fetchone()

                if row is None:
                    self._store.write(data)
                    cost = self._cost_model.measure(len(data))
                    con.execute(
                        """
                        INSERT INTO registrations(address, publisher, registration_cost, registered_ts_ms)
                        VALUES(?, ?, ?, ?);
                        """,
                        (address, pub, int(cost), int(self._clock())),
                    )
                    self._events.record(
                        "register",
                        address,
                        caller,
                        publisher=pub,
                        created=True,
                        registration_cost=int(cost),
                    )
                    return RegistrationReceipt(address=address, created=True, refund=paid)

                rec = self._row_to_record(row)
                owed = self._owed(rec)
                if owed <= 0:
                    self._events.record("register", address, caller, created=False, royalty=0)
                    return RegistrationReceipt(address=address, created=False, refund=paid)

                if paid < owed:
                    raise InsufficientRoyaltyPayment(
                        "payment_required",
                        "insufficient_royalty_payment",
                        {"address": address, "owed": owed, "paid": paid},
                    )

                publisher_credit, protocol_credit = split_royalty(owed, self._publisher_share_bps)
                self._credit(con, str(rec.publisher), publisher_credit)
                self._credit(con, self._protocol_account, protocol_credit)

                self._events.record(
                    "register",
                    address,
                    caller,
                    created=False,
                    royalty=owed,
                    publisher=rec.publisher,
                    publisher_credit=publisher_credit,
                    protocol_credit=protocol_credit,
                )
                self._db.on_commit(lambda: _count_payment(owed))

        return RegistrationReceipt(
            address=address,
            created=False,
            royalty_paid=owed,
            publisher_credit=publisher_credit,
            protocol_credit=protocol_credit,
            refund=paid - owed,
        )

    @staticmethod
    def _owed(rec: RegistrationRecord) -> int:
        if rec.publisher is None:
            return 0
        return max(0, int(rec.registration_cost))

    def registration(self, address: str) -> RegistrationRecord:
        a = self._store.validate_address(address)
        with self._db.connection() as con:
            row = con.execute("SELECT * FROM registrations WHERE address=?;", (a,)).fetchone()
        if row is None:
            raise NotFound("not_found", "registration_missing", {"address": a})
        return self._row_to_record(row)

    def royalty_for(self, address: str) -> int:
        """Royalty currently owed to re-register `address` (0 if unknown or waived)."""
        try:
            return self._owed(self.registration(address))
        except NotFound:
            return 0

    # ----------------------------
    # Balances
    # ----------------------------

    def royalty_balance(self, publisher: str) -> int:
        with self._db.connection() as con:
            return self._balance(con, str(publisher))

    def protocol_balance(self) -> int:
        return self.royalty_balance(self._protocol_account)

    def collect_royalties(self, amount: int, withdraw_to: str, *, caller: Optional[str]) -> Payout:
        account = _norm_id(caller)
        target = _norm_id(withdraw_to)
        amt = int(amount)

        with self._events.guard("collect_royalties", str(account or ""), caller):
            if account is None:
                raise Unauthorized("forbidden", "caller_required", {})
            if target is None:
                raise InvalidPublisher("invalid_payload", "missing_withdraw_to", {})
            if amt <= 0:
                raise BadRequest("invalid_payload", "bad_amount", {"amount": amt})
            self._require(account, SITE_SCOPE, Operation.COLLECT_ROYALTIES)

            with self._db.write_tx() as con:
                balance = self._balance(con, account)
                if amt > balance:
                    raise InsufficientBalance(
                        "forbidden",
                        "insufficient_balance",
                        {"balance": balance, "amount": amt},
                    )

                # Debit before the transfer is recorded.
                con.execute("UPDATE balances SET balance = balance - ? WHERE account=?;", (amt, account))
                cur = con.execute(
                    "INSERT INTO payouts(account, withdraw_to, amount, created_ts_ms) VALUES(?, ?, ?, ?);",
                    (account, target, amt, int(self._clock())),
                )
                payout_id = int(cur.lastrowid or 0)

                self._events.record(
                    "collect_royalties",
                    account,
                    caller,
                    amount=amt,
                    withdraw_to=target,
                    payout_id=payout_id,
                )
                self._db.on_commit(lambda: metrics.inc_counter("royalty_withdrawals"))

        return Payout(
            payout_id=payout_id,
            account=account,
            withdraw_to=target,
            amount=amt,
            remaining_balance=balance - amt,
        )

    # ----------------------------
    # Attribution
    # ----------------------------

    def update_publisher(self, address: str, new_publisher: Optional[str], *, caller: Optional[str]) -> None:
        a = self._store.validate_address(address)
        new_pub = _norm_id(new_publisher)

        with self._events.guard("update_publisher", a, caller):
            with self._db.write_tx() as con:
                row = con.execute("SELECT * FROM registrations WHERE address=?;", (a,)).fetchone()
                if row is None:
                    raise NotFound("not_found", "registration_missing", {"address": a})
                rec = self._row_to_record(row)

                if rec.publisher is None or _norm_id(caller) != rec.publisher:
                    raise Unauthorized("forbidden", "not_publisher", {})
                if new_pub is None:
                    raise InvalidPublisher("invalid_payload", "null_publisher", {})
                self._require(caller, a, Operation.UPDATE_PUBLISHER)

                con.execute("UPDATE registrations SET publisher=? WHERE address=?;", (new_pub, a))
                self._events.record(
                    "update_publisher",
                    a,
                    caller,
                    previous=rec.publisher,
                    publisher=new_pub,
                )


__all__ = ["Payout", "RegistrationReceipt", "RegistrationRecord", "RoyaltyLedger"]
