"""Shared test fixtures."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pytest

from expense_ingest.config import MailboxConfig
from expense_ingest.models import RawMessage

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

VIB_SENDER = "info@card.vib.com.vn"
GRAB_SENDER = "no-reply@grab.com"
MOMO_SENDER = "no-reply@momo.vn"

VIB_TEXT = """\
Dear Customer,
VIB would like to inform you of the following card transaction:
Card number: 4123***5678
Cardholder: NGUYEN VAN A
Transaction: Purchase
Value: 150,000 VND
At: 14:25 19/10/2026
At HIGHLANDS COFFEE NGUYEN HUE
For more information, please contact VIB Card Center at 1800 8195.
"""

VIB_TEXT_VI = """\
Kính gửi Quý khách,
VIB xin thông báo giao dịch thẻ như sau:
Số thẻ: 4123***5678
Chủ thẻ: NGUYEN VAN A
Giao dịch: Thanh toán
Giá trị: 38.000 VND
Vào lúc: 08:05 3/2/2026
Tại CIRCLE K LE LOI
Để biết thêm thông tin, vui lòng liên hệ 1800 8195.
"""

GRAB_FOOD_HTML = """\
<html><head><style>.total { color: #00b14f; }</style></head><body>
<h1>Your Grab E-Receipt</h1>
<p>Hope you enjoyed your food!</p>
<table>
<tr><td>Booking ID:</td><td>A-4XYZ123ABC</td></tr>
<tr><td>Ordered from:</td><td>Phở Hòa Pasteur</td></tr>
<tr><td>Delivered to:</td><td>123 Nguyen Hue, District 1</td></tr>
</table>
<p>1x Phở bò tái 65,000</p>
<p>Subtotal 65,000</p><p>Delivery fee 15,000</p>
<p class="total">Total Paid ₫ 80,000</p>
<p>Picked up on 19 Oct 2026 12:30</p>
<script>window.track && track("receipt");</script>
</body></html>
"""

GRAB_RIDE_TEXT = """\
Your Grab E-Receipt
GrabCar
Pick-up location: 12 Le Loi, District 1
Drop-off location: Tan Son Nhat Airport
Total Paid 45.000 ₫
Oct 19, 2026 8:15 AM
Booking ID: A-RIDE12345
"""

GRAB_PENDING_TEXT = """\
Your GrabFood order for later is confirmed.
Ordered from: Bánh Mì Huỳnh Hoa
Your order for later will be delivered on 20 Oct 2026 11:00.
Total 80,000₫
"""

MOMO_TEXT = """\
Giao dịch thành công
Ví MoMo
Số tiền: -85.000đ
Thời gian: 14:25 - 19/10/2026
Mã giao dịch: 34567891234
Người nhận: CIRCLE K VIETNAM
Nguồn tiền: Ví MoMo
"""


@pytest.fixture
def mailbox_config() -> MailboxConfig:
    """Provide a test IMAP configuration."""
    return MailboxConfig(
        host="imap.example.com",
        username="test@example.com",
        password="secret",  # pragma: allowlist secret
        port=993,
        folder="INBOX",
    )


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    """Remove every mailbox, AI and sync variable from the environment."""
    prefixes = ("EMAIL_", "TRUSTED_SENDERS", "SYNC_", "ANTHROPIC_", "LLM_", "LOG_LEVEL")
    for key in list(os.environ):
        if key.startswith(prefixes):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def make_message() -> Callable[..., RawMessage]:
    """Build a RawMessage with sensible defaults."""

    def _make(
        *,
        uid: str = "1",
        sender: str = VIB_SENDER,
        subject: str = "VIB - Transaction notification",
        text_body: str | None = VIB_TEXT,
        html_body: str | None = None,
        account: str = "test@example.com",
    ) -> RawMessage:
        return RawMessage(
            uid=uid,
            message_id=f"<{uid}@example.com>",
            account=account,
            sender=sender,
            subject=subject,
            received_at=datetime(2026, 10, 19, 7, 30, tzinfo=UTC),
            text_body=text_body,
            html_body=html_body,
        )

    return _make


class FakeSource:
    """In-memory MessageSource recording mark-as-read calls."""

    def __init__(
        self,
        account: str,
        messages: Sequence[RawMessage] = (),
        error: Exception | None = None,
    ) -> None:
        self.account = account
        self.messages = list(messages)
        self.error = error
        self.marked: list[str] = []

    def fetch_trusted_unread(self) -> Iterator[RawMessage]:
        if self.error is not None:
            raise self.error
        yield from self.messages

    def mark_as_read(self, uids: Sequence[str]) -> None:
        self.marked.extend(uids)
