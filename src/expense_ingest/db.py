"""Database connection helper and schema."""

from __future__ import annotations

import psycopg
from psycopg.rows import dict_row

from expense_ingest.config import get_database_url

SCHEMA_STATEMENTS = (
    """\
CREATE TABLE IF NOT EXISTS expenses (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    card_number text,
    cardholder text,
    transaction_type text,
    amount numeric(16, 2) NOT NULL CHECK (amount > 0),
    currency char(3) NOT NULL DEFAULT 'VND',
    transaction_date timestamptz NOT NULL,
    merchant text NOT NULL,
    category text,
    notes text,
    source text NOT NULL DEFAULT 'manual',
    email_subject text,
    email_message_id text,
    synthetic_date boolean NOT NULL DEFAULT false,
    created_at timestamptz NOT NULL DEFAULT now(),
    updated_at timestamptz NOT NULL DEFAULT now(),
    CONSTRAINT expenses_natural_key UNIQUE (amount, merchant, transaction_date, source)
)
""",
    "ALTER TABLE expenses ADD COLUMN IF NOT EXISTS email_message_id text",
    # Rows dated with the processing time are keyed by their Message-ID.
    "CREATE UNIQUE INDEX IF NOT EXISTS expenses_synthetic_message_key"
    " ON expenses (email_message_id, source) WHERE synthetic_date",
    "CREATE INDEX IF NOT EXISTS expenses_source_created_idx"
    " ON expenses (source, created_at DESC)",
)


def get_connection() -> psycopg.Connection[dict[str, object]]:
    """Create and return a new autocommit database connection."""
    return psycopg.connect(get_database_url(), row_factory=dict_row, autocommit=True)


def init_schema(conn: psycopg.Connection[dict[str, object]]) -> None:
    """Create the expenses table and its uniqueness constraints."""
    for statement in SCHEMA_STATEMENTS:
        conn.execute(statement)
