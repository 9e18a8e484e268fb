"""Domain, extraction and reporting models for expense ingestion."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Literal
from uuid import UUID

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

logger = logging.getLogger(__name__)

EMAIL_SOURCE = "email"


class SkipReason(StrEnum):
    """Why a message produced no transaction."""

    NOT_TRANSACTION = "not_transaction"
    NO_PROVIDER = "no_provider"
    MISSING_FIELD = "missing_field"


class InsertOutcome(StrEnum):
    """Result of one persistence attempt."""

    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class RawMessage:
    """Raw email data from a message source adapter."""

    uid: str
    message_id: str
    account: str
    sender: str
    subject: str
    received_at: datetime
    text_body: str | None = None
    html_body: str | None = None


class ParsedTransaction(BaseModel):
    """A completed transaction extracted from one email."""

    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(gt=0)
    currency: str = Field(default="VND", pattern=r"^[A-Z]{3}$")
    merchant: str = Field(min_length=1)
    transaction_date: AwareDatetime
    transaction_type: str = ""
    card_number: str = ""
    cardholder: str = ""
    source: Literal["email"] = EMAIL_SOURCE
    email_subject: str = ""
    email_message_id: str = ""
    synthetic_date: bool = False

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value


def coerce_transaction(**fields: Any) -> ParsedTransaction | None:
    """Validate candidate fields, returning None for an invalid candidate.

    A candidate without a positive amount or a merchant is a non-match,
    not an error, whichever tier produced it.
    """
    try:
        return ParsedTransaction(**fields)
    except ValidationError as exc:
        logger.debug(
            "Discarding candidate transaction: %s",
            ", ".join(str(err["loc"][0]) for err in exc.errors() if err["loc"]),
        )
        return None


@dataclass
class Extraction:
    """Outcome of running one message through the extraction engine."""

    transaction: ParsedTransaction | None
    tier: str | None = None
    provider: str | None = None
    skip_reason: SkipReason | None = None

    @classmethod
    def skipped(cls, reason: SkipReason, provider: str | None = None) -> Extraction:
        return cls(transaction=None, provider=provider, skip_reason=reason)


class Expense(BaseModel):
    """Full expense record as stored in the ledger."""

    id: UUID
    amount: Decimal
    currency: str
    merchant: str
    transaction_date: datetime
    transaction_type: str | None = None
    card_number: str | None = None
    cardholder: str | None = None
    source: str
    email_subject: str | None = None
    email_message_id: str | None = None
    synthetic_date: bool = False
    category: str | None = None
    notes: str | None = None
    created_at: datetime
    updated_at: datetime


class AccountReport(BaseModel):
    """Counters for one mailbox account within a sync run."""

    account: str
    fetched: int = 0
    parsed: int = 0
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: int = 0
    synthetic_dates: int = 0
    skip_reasons: dict[str, int] = Field(default_factory=dict)
    error: str | None = None

    def record_skip(self, reason: SkipReason | None) -> None:
        self.skipped += 1
        key = str(reason) if reason else "unknown"
        self.skip_reasons[key] = self.skip_reasons.get(key, 0) + 1

    def record_outcome(self, outcome: InsertOutcome) -> None:
        if outcome is InsertOutcome.INSERTED:
            self.inserted += 1
        elif outcome is InsertOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.failed += 1


class SyncReport(BaseModel):
    """Aggregate result of one ingestion run."""

    started_at: datetime
    finished_at: datetime | None = None
    fetched: int = 0
    parsed: int = 0
    inserted: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: int = 0
    synthetic_dates: int = 0
    failed_accounts: int = 0
    skip_reasons: dict[str, int] = Field(default_factory=dict)
    accounts: list[AccountReport] = Field(default_factory=list)
    expenses: list[Expense] = Field(default_factory=list)

    def add_account(self, account: AccountReport) -> None:
        """Fold one account's counters into the totals."""
        self.accounts.append(account)
        self.fetched += account.fetched
        self.parsed += account.parsed
        self.inserted += account.inserted
        self.duplicates += account.duplicates
        self.failed += account.failed
        self.skipped += account.skipped
        self.synthetic_dates += account.synthetic_dates
        for reason, count in account.skip_reasons.items():
            self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + count
        if account.error is not None:
            self.failed_accounts += 1
