"""CLI entry point for expense-ingest."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import click
import psycopg

from expense_ingest.config import (
    get_anthropic_api_key,
    get_log_level,
    get_mailbox_configs,
)
from expense_ingest.ledger import LedgerUnavailableError, MemoryLedger, PostgresLedger

if TYPE_CHECKING:
    from expense_ingest.models import SyncReport


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
def cli(verbose: bool) -> None:
    """Expense ingest: turn bank and wallet emails into expenses."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command()
@click.option("--dry-run", is_flag=True, help="Parse without writing to the database.")
@click.option(
    "--mark-read/--no-mark-read",
    default=None,
    help="Flag stored messages as read (default: EMAIL_MARK_READ).",
)
@click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON.")
def sync(dry_run: bool, mark_read: bool | None, as_json: bool) -> None:
    """Fetch trusted unread mail and store new expenses."""
    from expense_ingest.sync import build_orchestrator

    try:
        if dry_run:
            report = build_orchestrator(MemoryLedger(), mark_read=False).run_sync()
        else:
            from expense_ingest.db import get_connection

            with get_connection() as conn:
                orchestrator = build_orchestrator(
                    PostgresLedger(conn), mark_read=mark_read
                )
                report = orchestrator.run_sync()
    except (ValueError, LedgerUnavailableError, psycopg.OperationalError) as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(report.model_dump_json(indent=2))
    else:
        _echo_summary(report)


@cli.command()
def status() -> None:
    """Show configured accounts and the last email sync."""
    accounts = get_mailbox_configs()
    click.echo(f"Mailbox accounts: {len(accounts)}")
    for account in accounts:
        click.echo(f"  {account.username} @ {account.host}:{account.port}")
    click.echo(f"AI extraction: {'enabled' if get_anthropic_api_key() else 'disabled'}")

    from expense_ingest.db import get_connection

    try:
        with get_connection() as conn:
            last = PostgresLedger(conn).last_synced_at()
    except (ValueError, LedgerUnavailableError, psycopg.OperationalError) as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Last email expense: {last.isoformat() if last else 'never'}")


@cli.command("init-db")
def init_db() -> None:
    """Create the expenses table."""
    from expense_ingest.db import get_connection, init_schema

    try:
        with get_connection() as conn:
            init_schema(conn)
    except (ValueError, psycopg.OperationalError) as e:
        raise click.ClickException(str(e)) from e
    click.echo("Schema ready.")


def _echo_summary(report: SyncReport) -> None:
    click.echo(
        f"Fetched {report.fetched}, parsed {report.parsed}, "
        f"inserted {report.inserted}, duplicates {report.duplicates}, "
        f"failed {report.failed}, skipped {report.skipped}"
    )
    if report.synthetic_dates:
        click.echo(
            f"{report.synthetic_dates} expenses had no date in the email, "
            "processing time used."
        )
    for account in report.accounts:
        if account.error:
            click.echo(f"Account {account.account} failed: {account.error}", err=True)
    for expense in report.expenses:
        click.echo(
            f"  {expense.transaction_date:%Y-%m-%d %H:%M}  "
            f"{expense.amount} {expense.currency}  {expense.merchant}"
        )
