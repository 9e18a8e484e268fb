"""Tests for expense_ingest.adapters.imap."""

from __future__ import annotations

import hashlib
import imaplib
from datetime import date, datetime, timedelta, timezone
from email import message_from_bytes
from email.header import Header
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from unittest.mock import MagicMock, call, patch

import pytest
from conftest import VIB_SENDER

from expense_ingest.adapters.base import MessageSource
from expense_ingest.adapters.imap import ImapAdapter, build_search_criteria, imap_date
from expense_ingest.config import MailboxConfig

TRUSTED = ("info@card.vib.com.vn", "no-reply@grab.com")


def _make_simple_email(
    *,
    subject: str = "VIB - Transaction notification",
    sender: str = VIB_SENDER,
    date_header: str = "Mon, 19 Oct 2026 14:30:00 +0700",
    message_id: str | None = "<vib-1@card.vib.com.vn>",
    body: str = "Value: 150,000 VND",
    html: bool = False,
) -> bytes:
    """Build a simple email message as bytes."""
    subtype = "html" if html else "plain"
    msg = MIMEText(body, subtype, "utf-8")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["Date"] = date_header
    if message_id:
        msg["Message-ID"] = message_id
    return msg.as_bytes()


def _make_multipart_email(
    *,
    text_body: str | None = "Plain version",
    html_body: str | None = None,
    attachments: list[tuple[str, bytes]] | None = None,
) -> bytes:
    """Build a multipart email with optional attachments."""
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Your Grab E-Receipt"
    msg["From"] = "no-reply@grab.com"
    msg["Date"] = "Mon, 19 Oct 2026 12:45:00 +0700"
    msg["Message-ID"] = "<grab-1@grab.com>"

    if text_body or html_body:
        alt = MIMEMultipart("alternative")
        if text_body:
            alt.attach(MIMEText(text_body, "plain", "utf-8"))
        if html_body:
            alt.attach(MIMEText(html_body, "html", "utf-8"))
        msg.attach(alt)

    for filename, data in attachments or []:
        att = MIMEApplication(data, "pdf")
        att.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(att)

    return msg.as_bytes()


def _mock_imap_connection(
    messages: dict[bytes, bytes], search_status: str = "OK"
) -> MagicMock:
    """Create a mock IMAP connection answering UID SEARCH/FETCH/STORE."""
    conn = MagicMock()
    conn.select.return_value = ("OK", [b"1"])

    def fake_uid(command: str, *args: object) -> tuple[str, list[object]]:
        if command == "SEARCH":
            return (search_status, [b" ".join(messages.keys())])
        if command == "FETCH":
            uid = str(args[0])
            data = messages.get(uid.encode())
            if data is None:
                return ("OK", [None])
            return ("OK", [(f"1 (UID {uid} BODY[] {{100}}".encode(), data), b")"])
        return ("OK", [b""])

    conn.uid.side_effect = fake_uid
    return conn


class TestSearchCriteria:
    """Tests for imap_date and build_search_criteria."""

    def test_imap_date(self) -> None:
        assert imap_date(date(2026, 3, 5)) == "05-Mar-2026"

    def test_single_sender(self) -> None:
        criteria = build_search_criteria(["info@card.vib.com.vn"], date(2026, 9, 19))
        assert criteria == 'UNSEEN SINCE 19-Sep-2026 FROM "info@card.vib.com.vn"'

    def test_nested_or_for_many_senders(self) -> None:
        senders = ["a@x.vn", "b@y.vn", "c@z.vn"]
        criteria = build_search_criteria(senders, date(2026, 10, 19))
        assert criteria == (
            'UNSEEN SINCE 19-Oct-2026 OR FROM "a@x.vn" OR FROM "b@y.vn" FROM "c@z.vn"'
        )

    def test_no_senders_rejected(self) -> None:
        with pytest.raises(ValueError, match="trusted sender"):
            build_search_criteria([], date(2026, 10, 19))


class TestGetMessageId:
    """Tests for _get_message_id."""

    def test_extracts_message_id_header(self) -> None:
        msg = message_from_bytes(_make_simple_email(message_id="<unique-123@mail.com>"))
        assert ImapAdapter._get_message_id(msg) == "<unique-123@mail.com>"

    def test_fallback_hash_when_no_message_id(self) -> None:
        msg = message_from_bytes(_make_simple_email(message_id=None))
        result = ImapAdapter._get_message_id(msg)

        expected_key = f"{msg['Subject']}|{msg['Date']}|{msg['From']}"
        assert result == hashlib.sha256(expected_key.encode()).hexdigest()


class TestDecodeHeaderValue:
    """Tests for _decode_header_value."""

    def test_simple_ascii(self) -> None:
        assert ImapAdapter._decode_header_value("Hello World") == "Hello World"

    def test_rfc2047_vietnamese(self) -> None:
        encoded = Header("Thông báo giao dịch", "utf-8").encode()
        assert ImapAdapter._decode_header_value(encoded) == "Thông báo giao dịch"

    def test_none_returns_empty(self) -> None:
        assert ImapAdapter._decode_header_value(None) == ""


class TestSenderAddress:
    """Tests for _sender_address."""

    def test_display_name_removed_and_lowercased(self) -> None:
        raw = _make_simple_email(sender="VIB Card <Info@Card.VIB.com.vn>")
        msg = message_from_bytes(raw)
        assert ImapAdapter._sender_address(msg) == "info@card.vib.com.vn"


class TestExtractBodies:
    """Tests for _extract_bodies."""

    def test_plain_text_only(self) -> None:
        msg = message_from_bytes(_make_simple_email(body="Just text"))
        html_body, text_body = ImapAdapter._extract_bodies(msg)
        assert text_body == "Just text"
        assert html_body is None

    def test_html_only(self) -> None:
        msg = message_from_bytes(_make_simple_email(body="<h1>Total</h1>", html=True))
        html_body, text_body = ImapAdapter._extract_bodies(msg)
        assert html_body == "<h1>Total</h1>"
        assert text_body is None

    def test_multipart_with_text_and_html(self) -> None:
        raw = _make_multipart_email(
            text_body="Plain version", html_body="<p>HTML version</p>"
        )
        html_body, text_body = ImapAdapter._extract_bodies(message_from_bytes(raw))
        assert text_body == "Plain version"
        assert html_body == "<p>HTML version</p>"

    def test_attachments_ignored(self) -> None:
        raw = _make_multipart_email(
            text_body=None,
            html_body="<p>Total Paid 80,000</p>",
            attachments=[("receipt.pdf", b"%PDF-1.4 fake")],
        )
        html_body, text_body = ImapAdapter._extract_bodies(message_from_bytes(raw))
        assert html_body == "<p>Total Paid 80,000</p>"
        assert text_body is None

    def test_utf8_body_decoded(self) -> None:
        msg = message_from_bytes(_make_simple_email(body="Tại CIRCLE K LE LOI"))
        _html, text_body = ImapAdapter._extract_bodies(msg)
        assert text_body == "Tại CIRCLE K LE LOI"


class TestFetchTrustedUnread:
    """Tests for the fetch_trusted_unread flow."""

    def test_satisfies_message_source(self, mailbox_config: MailboxConfig) -> None:
        assert isinstance(ImapAdapter(mailbox_config, TRUSTED), MessageSource)

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_yields_trusted_messages(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        email1 = _make_simple_email(message_id="<vib-1@card.vib.com.vn>")
        email2 = _make_multipart_email()
        mock_ssl.return_value = _mock_imap_connection({b"7": email1, b"9": email2})

        results = list(ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread())

        assert [r.uid for r in results] == ["7", "9"]
        assert results[0].message_id == "<vib-1@card.vib.com.vn>"
        assert results[1].sender == "no-reply@grab.com"

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_parses_email_fields(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        mock_ssl.return_value = _mock_imap_connection({b"1": _make_simple_email()})

        (message,) = ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread()

        assert message.account == "test@example.com"
        assert message.subject == "VIB - Transaction notification"
        assert message.sender == VIB_SENDER
        assert message.text_body == "Value: 150,000 VND"
        assert message.received_at == datetime(
            2026, 10, 19, 14, 30, tzinfo=timezone(timedelta(hours=7))
        )

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_search_uses_trusted_senders_and_peek(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        conn = _mock_imap_connection({b"1": _make_simple_email()})
        mock_ssl.return_value = conn

        list(ImapAdapter(mailbox_config, TRUSTED, since_days=7).fetch_trusted_unread())

        search_call, fetch_call = conn.uid.call_args_list
        command, charset, criteria = search_call.args
        assert (command, charset) == ("SEARCH", None)
        assert criteria.startswith("UNSEEN SINCE ")
        assert 'OR FROM "info@card.vib.com.vn" FROM "no-reply@grab.com"' in criteria
        assert fetch_call == call("FETCH", "1", "(BODY.PEEK[])")

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_spoofed_sender_dropped(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        spoofed = _make_simple_email(sender="VIB <alerts@vib-security.example>")
        mock_ssl.return_value = _mock_imap_connection({b"1": spoofed})

        assert list(ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread()) == []

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_missing_fetch_data_skipped(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        conn = _mock_imap_connection({b"1": _make_simple_email()})
        conn.uid.side_effect = lambda command, *args: (
            ("OK", [b"1 2"]) if command == "SEARCH" else ("OK", [None])
        )
        mock_ssl.return_value = conn

        assert list(ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread()) == []

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_empty_mailbox(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        mock_ssl.return_value = _mock_imap_connection({})
        assert list(ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread()) == []

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_connection_uses_config(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        conn = _mock_imap_connection({})
        mock_ssl.return_value = conn

        list(ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread())

        mock_ssl.assert_called_once_with("imap.example.com", 993)
        conn.login.assert_called_once_with("test@example.com", "secret")
        conn.select.assert_called_once_with("INBOX", readonly=True)
        conn.logout.assert_called_once()

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4")
    def test_plain_connection_when_ssl_disabled(self, mock_plain: MagicMock) -> None:
        config = MailboxConfig(
            host="mail.example.com",
            username="me@example.com",
            password="pw",  # pragma: allowlist secret
            port=143,
            use_ssl=False,
        )
        mock_plain.return_value = _mock_imap_connection({})

        list(ImapAdapter(config, TRUSTED).fetch_trusted_unread())

        mock_plain.assert_called_once_with("mail.example.com", 143)

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_search_failure_raises(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        conn = _mock_imap_connection({}, search_status="NO")
        mock_ssl.return_value = conn

        with pytest.raises(imaplib.IMAP4.error, match="search failed"):
            list(ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread())

        conn.logout.assert_called_once()

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_logout_called_on_error(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        conn = MagicMock()
        conn.select.side_effect = OSError("Connection lost")
        mock_ssl.return_value = conn

        with pytest.raises(OSError, match="Connection lost"):
            list(ImapAdapter(mailbox_config, TRUSTED).fetch_trusted_unread())

        conn.logout.assert_called_once()


class TestMarkAsRead:
    """Tests for mark_as_read."""

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_sets_seen_flag(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        conn = _mock_imap_connection({})
        mock_ssl.return_value = conn

        ImapAdapter(mailbox_config, TRUSTED).mark_as_read(["3", "5"])

        conn.select.assert_called_once_with("INBOX")
        conn.uid.assert_called_once_with("STORE", "3,5", "+FLAGS", "(\\Seen)")
        conn.logout.assert_called_once()

    @patch("expense_ingest.adapters.imap.imaplib.IMAP4_SSL")
    def test_no_uids_no_connection(
        self, mock_ssl: MagicMock, mailbox_config: MailboxConfig
    ) -> None:
        ImapAdapter(mailbox_config, TRUSTED).mark_as_read([])
        mock_ssl.assert_not_called()
