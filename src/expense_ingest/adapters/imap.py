"""IMAP message source adapter."""

from __future__ import annotations

import hashlib
import imaplib
import logging
from datetime import UTC, date, datetime, timedelta
from email import message_from_bytes
from email.header import decode_header
from email.utils import parseaddr, parsedate_to_datetime
from typing import TYPE_CHECKING, cast

from expense_ingest.models import RawMessage

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from email.message import Message

    from expense_ingest.config import MailboxConfig

logger = logging.getLogger(__name__)

_IMAP_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)  # fmt: skip


def imap_date(day: date) -> str:
    """Format a date the way IMAP SEARCH expects (``19-Oct-2026``)."""
    return f"{day.day:02d}-{_IMAP_MONTHS[day.month - 1]}-{day.year}"


def build_search_criteria(senders: Sequence[str], since: date) -> str:
    """Build ``UNSEEN SINCE <date> <FROM ...>`` with nested ORs over senders."""
    if not senders:
        msg = "At least one trusted sender is required"
        raise ValueError(msg)

    from_terms = [f'FROM "{sender}"' for sender in senders]
    sender_clause = from_terms[-1]
    for term in reversed(from_terms[:-1]):
        sender_clause = f"OR {term} {sender_clause}"

    return f"UNSEEN SINCE {imap_date(since)} {sender_clause}"


class ImapAdapter:
    """Fetch unread mail from trusted senders in one IMAP mailbox."""

    def __init__(
        self,
        config: MailboxConfig,
        trusted_senders: Sequence[str],
        *,
        since_days: int = 30,
    ) -> None:
        self.config = config
        self.account = config.username
        self.trusted_senders = tuple(s.strip().lower() for s in trusted_senders)
        self.since_days = since_days

    def fetch_trusted_unread(self) -> Iterator[RawMessage]:
        """Connect, search unread trusted mail, yield parsed messages.

        Bodies are fetched with BODY.PEEK so nothing is marked as read here.
        """
        conn: imaplib.IMAP4 | None = None
        try:
            conn = self._connect()
            conn.select(self.config.folder, readonly=True)
            uids = self._search_uids(conn)
            logger.info(
                "Found %d unread trusted messages for %s", len(uids), self.account
            )

            for uid in uids:
                raw_email = self._fetch_message(conn, uid)
                if raw_email is None:
                    continue

                msg = message_from_bytes(raw_email)
                sender = self._sender_address(msg)
                if sender not in self.trusted_senders:
                    logger.warning(
                        "Dropping message %s from untrusted sender %r",
                        uid.decode(),
                        sender,
                    )
                    continue

                try:
                    yield self._parse_message(msg, uid.decode(), sender)
                except Exception:
                    logger.warning(
                        "Failed to parse message %s", uid.decode(), exc_info=True
                    )
        finally:
            self._logout(conn)

    def mark_as_read(self, uids: Sequence[str]) -> None:
        """Flag the given UIDs as seen in a separate read-write session."""
        if not uids:
            return
        conn: imaplib.IMAP4 | None = None
        try:
            conn = self._connect()
            conn.select(self.config.folder)
            conn.uid("STORE", ",".join(uids), "+FLAGS", "(\\Seen)")
            logger.info("Marked %d messages as read for %s", len(uids), self.account)
        finally:
            self._logout(conn)

    def _connect(self) -> imaplib.IMAP4:
        """Establish an IMAP connection and authenticate."""
        conn: imaplib.IMAP4
        if self.config.use_ssl:
            conn = imaplib.IMAP4_SSL(self.config.host, self.config.port)
        else:
            conn = imaplib.IMAP4(self.config.host, self.config.port)
        conn.login(self.config.username, self.config.password)
        return conn

    @staticmethod
    def _logout(conn: imaplib.IMAP4 | None) -> None:
        if conn is None:
            return
        try:
            conn.logout()
        except Exception:
            logger.debug("Error during IMAP logout", exc_info=True)

    def _search_uids(self, conn: imaplib.IMAP4) -> list[bytes]:
        """Return UIDs of unseen messages from trusted senders in the window."""
        since = datetime.now(tz=UTC).date() - timedelta(days=self.since_days)
        criteria = build_search_criteria(self.trusted_senders, since)
        status, data = conn.uid("SEARCH", None, criteria)
        if status != "OK":
            msg = f"IMAP search failed for {self.account}: {status}"
            raise imaplib.IMAP4.error(msg)
        raw = data[0] if data else None
        if not raw:
            return []
        return cast("list[bytes]", raw.split())

    @staticmethod
    def _fetch_message(conn: imaplib.IMAP4, uid: bytes) -> bytes | None:
        """Fetch a single message by UID without setting the Seen flag."""
        _status, data = conn.uid("FETCH", uid.decode(), "(BODY.PEEK[])")
        if not data:
            return None
        for part in data:
            if isinstance(part, tuple):
                return part[1]
        return None

    def _parse_message(self, msg: Message, uid: str, sender: str) -> RawMessage:
        """Convert an email Message to a RawMessage."""
        subject = self._decode_header_value(msg.get("Subject", ""))

        date_str = msg.get("Date")
        received_at = parsedate_to_datetime(date_str) if date_str else None
        if received_at is not None and received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=UTC)

        html_body, text_body = self._extract_bodies(msg)

        return RawMessage(
            uid=uid,
            message_id=self._get_message_id(msg),
            account=self.account,
            sender=sender,
            subject=subject,
            received_at=received_at or datetime.now(tz=UTC),
            text_body=text_body,
            html_body=html_body,
        )

    @classmethod
    def _sender_address(cls, msg: Message) -> str:
        """Return the bare lowercase address from the From header."""
        _name, address = parseaddr(cls._decode_header_value(msg.get("From", "")))
        return address.strip().lower()

    @staticmethod
    def _get_message_id(msg: Message) -> str:
        """Extract a unique identifier for the message.

        Uses the Message-ID header if present; falls back to a hash
        of subject + date + sender.
        """
        message_id = msg.get("Message-ID")
        if message_id:
            return message_id.strip()

        subject = msg.get("Subject", "")
        date_hdr = msg.get("Date", "")
        sender = msg.get("From", "")
        key = f"{subject}|{date_hdr}|{sender}"
        return hashlib.sha256(key.encode()).hexdigest()

    @staticmethod
    def _decode_header_value(value: str | None) -> str:
        """Decode an RFC 2047 encoded header value."""
        if not value:
            return ""
        parts = decode_header(value)
        decoded_parts: list[str] = []
        for data, charset in parts:
            if isinstance(data, bytes):
                decoded_parts.append(data.decode(charset or "utf-8", errors="replace"))
            else:
                decoded_parts.append(data)
        return "".join(decoded_parts)

    @staticmethod
    def _extract_bodies(msg: Message) -> tuple[str | None, str | None]:
        """Walk the MIME tree and return the first HTML and plain-text bodies."""
        html_body: str | None = None
        text_body: str | None = None

        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            disposition = str(part.get("Content-Disposition", ""))
            if part.get_filename() or "attachment" in disposition.lower():
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/html", "text/plain"):
                continue

            raw_payload = part.get_payload(decode=True)
            if raw_payload is None:
                continue
            charset = part.get_content_charset() or "utf-8"
            payload = cast("bytes", raw_payload).decode(charset, errors="replace")

            if content_type == "text/html" and html_body is None:
                html_body = payload
            elif content_type == "text/plain" and text_body is None:
                text_body = payload

        return html_body, text_body
