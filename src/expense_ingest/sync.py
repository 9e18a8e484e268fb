"""Ingestion orchestrator: fetch, extract, persist, report."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from expense_ingest.adapters.imap import ImapAdapter
from expense_ingest.config import (
    get_mailbox_configs,
    get_mark_read,
    get_recency_days,
    get_trusted_senders,
)
from expense_ingest.extraction import ExtractionEngine
from expense_ingest.ledger import DuplicateExpenseError, LedgerWriteError
from expense_ingest.models import AccountReport, InsertOutcome, SyncReport

if TYPE_CHECKING:
    from collections.abc import Sequence

    from expense_ingest.adapters.base import MessageSource
    from expense_ingest.ledger import ExpenseLedger
    from expense_ingest.models import Expense, ParsedTransaction

logger = logging.getLogger(__name__)


@dataclass
class _AccountBatch:
    """What one account's worker hands back to the persisting thread."""

    source: MessageSource
    report: AccountReport
    pending: list[tuple[str, ParsedTransaction]] = field(default_factory=list)


class SyncOrchestrator:
    """Run one ingestion cycle across every configured mailbox.

    Accounts are fetched and extracted concurrently, each with its own
    session. Persistence happens on the calling thread; the ledger's
    natural-key constraint makes a re-run safe.
    """

    def __init__(
        self,
        sources: Sequence[MessageSource],
        engine: ExtractionEngine,
        ledger: ExpenseLedger,
        *,
        mark_read: bool = False,
        max_workers: int = 4,
    ) -> None:
        self.sources = list(sources)
        self.engine = engine
        self.ledger = ledger
        self.mark_read = mark_read
        self.max_workers = max_workers

    def run_sync(self) -> SyncReport:
        """Fetch, extract and persist; return the aggregated report.

        Raises ValueError when no account is configured. Ledger
        unavailability propagates; everything local to one message or one
        account is recorded in the report instead.
        """
        if not self.sources:
            msg = "No mailbox accounts configured"
            raise ValueError(msg)

        report = SyncReport(started_at=datetime.now(tz=UTC))
        workers = max(1, min(self.max_workers, len(self.sources)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sync") as pool:
            batches = list(pool.map(self._collect, self.sources))

        for batch in batches:
            inserted = self._persist(batch)
            report.expenses.extend(inserted)
            report.add_account(batch.report)
            logger.info(
                "Account %s: fetched=%d parsed=%d inserted=%d duplicates=%d "
                "failed=%d skipped=%d",
                batch.report.account,
                batch.report.fetched,
                batch.report.parsed,
                batch.report.inserted,
                batch.report.duplicates,
                batch.report.failed,
                batch.report.skipped,
            )

        report.finished_at = datetime.now(tz=UTC)
        if report.synthetic_dates:
            logger.warning(
                "%d transactions used the processing time as their date",
                report.synthetic_dates,
            )
        return report

    def _collect(self, source: MessageSource) -> _AccountBatch:
        """Fetch and extract one account's messages; never raises."""
        report = AccountReport(account=source.account)
        batch = _AccountBatch(source=source, report=report)
        try:
            messages = list(source.fetch_trusted_unread())
        except Exception as exc:
            logger.exception("Fetching mail for %s failed", source.account)
            report.error = f"{type(exc).__name__}: {exc}"
            return batch

        report.fetched = len(messages)
        for message in messages:
            try:
                extraction = self.engine.extract(message)
            except Exception:
                logger.exception("Extraction crashed for message %s", message.uid)
                report.failed += 1
                continue

            if extraction.transaction is None:
                report.record_skip(extraction.skip_reason)
                continue

            report.parsed += 1
            if extraction.transaction.synthetic_date:
                report.synthetic_dates += 1
            batch.pending.append((message.uid, extraction.transaction))
        return batch

    def _persist(self, batch: _AccountBatch) -> list[Expense]:
        """Write one account's transactions; flag handled UIDs as read."""
        inserted: list[Expense] = []
        handled_uids: list[str] = []
        for uid, transaction in batch.pending:
            outcome, expense = self._insert(transaction)
            batch.report.record_outcome(outcome)
            if expense is not None:
                inserted.append(expense)
            if outcome is not InsertOutcome.FAILED:
                handled_uids.append(uid)

        if self.mark_read and handled_uids:
            try:
                batch.source.mark_as_read(handled_uids)
            except Exception:
                logger.warning(
                    "Could not mark %d messages read for %s",
                    len(handled_uids),
                    batch.source.account,
                    exc_info=True,
                )
        return inserted

    def _insert(
        self, transaction: ParsedTransaction
    ) -> tuple[InsertOutcome, Expense | None]:
        try:
            expense = self.ledger.insert(transaction)
        except DuplicateExpenseError:
            logger.debug("Duplicate transaction: %s", transaction.merchant)
            return InsertOutcome.DUPLICATE, None
        except LedgerWriteError:
            logger.warning(
                "Failed to store transaction from %r",
                transaction.email_subject,
                exc_info=True,
            )
            return InsertOutcome.FAILED, None
        return InsertOutcome.INSERTED, expense


def build_sources() -> list[MessageSource]:
    """One IMAP adapter per configured account."""
    senders = get_trusted_senders()
    since_days = get_recency_days()
    return [
        ImapAdapter(config, senders, since_days=since_days)
        for config in get_mailbox_configs()
    ]


def build_orchestrator(
    ledger: ExpenseLedger, *, mark_read: bool | None = None
) -> SyncOrchestrator:
    """Wire sources and the extraction engine from the environment."""
    return SyncOrchestrator(
        build_sources(),
        ExtractionEngine.from_env(),
        ledger,
        mark_read=get_mark_read() if mark_read is None else mark_read,
    )
