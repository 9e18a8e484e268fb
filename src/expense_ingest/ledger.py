"""Expense ledger: where parsed transactions are persisted."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol
from uuid import uuid4

import psycopg
import psycopg.errors

from expense_ingest.models import EMAIL_SOURCE, Expense

if TYPE_CHECKING:
    from expense_ingest.models import ParsedTransaction

logger = logging.getLogger(__name__)

_INSERT_SQL = """\
INSERT INTO expenses (
    card_number, cardholder, transaction_type, amount, currency,
    transaction_date, merchant, source, email_subject, email_message_id,
    synthetic_date
) VALUES (
    %(card_number)s, %(cardholder)s, %(transaction_type)s, %(amount)s,
    %(currency)s, %(transaction_date)s, %(merchant)s, %(source)s,
    %(email_subject)s, NULLIF(%(email_message_id)s, ''), %(synthetic_date)s
)
RETURNING *
"""

_LAST_SYNC_SQL = """\
SELECT created_at FROM expenses
WHERE source = %(source)s
ORDER BY created_at DESC
LIMIT 1
"""


def _describe(transaction: ParsedTransaction) -> str:
    return f"{transaction.amount} {transaction.currency} at {transaction.merchant}"


class LedgerError(Exception):
    """Base class for ledger failures."""


class DuplicateExpenseError(LedgerError):
    """The transaction's natural key already exists in the ledger."""


class LedgerWriteError(LedgerError):
    """A single row could not be written."""


class LedgerUnavailableError(LedgerError):
    """The ledger cannot be reached at all."""


class ExpenseLedger(Protocol):
    """Protocol for expense persistence backends."""

    def insert(self, transaction: ParsedTransaction) -> Expense: ...

    def last_synced_at(self) -> datetime | None: ...


class PostgresLedger:
    """PostgreSQL ledger relying on the expenses uniqueness constraints.

    A row is a duplicate when its natural key exists, or when its date is
    synthetic and a row from the same Message-ID is already stored.
    """

    def __init__(self, conn: psycopg.Connection[dict[str, object]]) -> None:
        self.conn = conn

    def insert(self, transaction: ParsedTransaction) -> Expense:
        """Insert one transaction, raising DuplicateExpenseError on conflict."""
        params = transaction.model_dump()
        try:
            with self.conn.transaction():
                row = self.conn.execute(_INSERT_SQL, params).fetchone()
        except psycopg.errors.UniqueViolation as exc:
            raise DuplicateExpenseError(_describe(transaction)) from exc
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        except psycopg.Error as exc:
            raise LedgerWriteError(str(exc)) from exc

        if row is None:
            msg = "INSERT returned no row"
            raise LedgerWriteError(msg)
        return Expense.model_validate(row)

    def last_synced_at(self) -> datetime | None:
        """Return when the most recent email-derived expense was stored."""
        try:
            row = self.conn.execute(_LAST_SYNC_SQL, {"source": EMAIL_SOURCE}).fetchone()
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise LedgerUnavailableError(str(exc)) from exc
        if row is None:
            return None
        return row["created_at"]  # type: ignore[return-value]


class MemoryLedger:
    """In-process ledger with the same uniqueness rules, for dry runs."""

    def __init__(self) -> None:
        self._rows: dict[tuple[Decimal, str, datetime, str], Expense] = {}
        self._synthetic_messages: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    @staticmethod
    def _key(transaction: ParsedTransaction) -> tuple[Decimal, str, datetime, str]:
        return (
            transaction.amount.quantize(Decimal("0.01")),
            transaction.merchant,
            transaction.transaction_date,
            transaction.source,
        )

    @staticmethod
    def _message_key(transaction: ParsedTransaction) -> tuple[str, str] | None:
        if not (transaction.synthetic_date and transaction.email_message_id):
            return None
        return transaction.email_message_id, transaction.source

    def insert(self, transaction: ParsedTransaction) -> Expense:
        key = self._key(transaction)
        message_key = self._message_key(transaction)
        now = datetime.now(tz=UTC)
        with self._lock:
            if key in self._rows or message_key in self._synthetic_messages:
                raise DuplicateExpenseError(_describe(transaction))
            expense = Expense(
                id=uuid4(),
                **transaction.model_dump(),
                created_at=now,
                updated_at=now,
            )
            self._rows[key] = expense
            if message_key is not None:
                self._synthetic_messages.add(message_key)
        return expense

    def last_synced_at(self) -> datetime | None:
        with self._lock:
            created = [
                e.created_at for e in self._rows.values() if e.source == EMAIL_SOURCE
            ]
        return max(created, default=None)

    def __len__(self) -> int:
        return len(self._rows)
