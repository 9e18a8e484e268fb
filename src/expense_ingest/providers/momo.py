"""MoMo e-wallet payment confirmations."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from expense_ingest.providers.base import (
    ProviderParser,
    clean_merchant,
    compile_all,
    first_match,
    parse_amount,
    resolve_date,
    text_between,
)

if TYPE_CHECKING:
    from expense_ingest.models import ParsedTransaction

_MONEY = r"\s*:?\s*-?\s*(?P<amount>\d[\d.,]*)\s*(?P<currency>đ|₫|VND)?"
_AMOUNT = compile_all([
    rf"(?:Số tiền|Amount){_MONEY}",
    rf"(?:Tổng tiền|Total){_MONEY}",
])
_TRANSACTION_ID = compile_all([
    r"(?:Mã giao dịch|Transaction ID|Mã GD)\s*:?\s*(\d{6,})",
])

_MERCHANT_STARTS = (
    r"Người nhận\s*:?",
    r"Recipient\s*:?",
    r"Nhà cung cấp\s*:?",
    r"Merchant\s*:?",
    r"Đối tác\s*:?",
)
_MERCHANT_ENDS = (
    r"Nguồn tiền",
    r"Source of funds",
    r"Mã giao dịch",
    r"Transaction ID",
    r"Thời gian",
    r"\bTime\b",
    r"Số tiền",
    r"\bAmount\b",
    r"Phí",
    r"\bFee\b",
    r"Lời nhắn",
    r"\bMessage\b",
    r"Số điện thoại",
    r"Phone",
)

_SUBTYPES = (
    (
        re.compile(r"thanh toán hóa đơn|bill payment|hóa đơn", re.I),
        "MoMo Bill Payment",
    ),
    (re.compile(r"chuyển tiền|money transfer|\btransfer", re.I), "MoMo Transfer"),
    (re.compile(r"nạp tiền điện thoại|top[- ]?up", re.I), "MoMo Top-up"),
)


class MomoParser(ProviderParser):
    """Payment and transfer confirmations from no-reply@momo.vn."""

    name = "momo"
    senders = ("no-reply@momo.vn", "noreply@momo.vn")
    signals = compile_all([
        r"\bví momo\b",
        r"\bmomo wallet\b",
        r"\bmomo\b.*(?:giao dịch thành công|transaction successful)",
    ])
    non_transactional = compile_all([
        r"đang xử lý|chờ xử lý|\bpending\b",
        r"giao dịch (?:thất bại|không thành công)",
        r"transaction (?:failed|unsuccessful)",
        r"bạn (?:đã )?nhận (?:được )?tiền",
        r"you (?:have )?received",
    ])
    default_merchant = "MoMo"
    ai_hint = (
        "MoMo confirmations show 'Số tiền'/'Amount', 'Thời gian'/'Time' as "
        "time then day/month/year, a 'Mã giao dịch'/'Transaction ID' and the "
        "recipient or merchant. Incoming transfers are not expenses."
    )

    def extract(self, subject: str, body: str) -> ParsedTransaction | None:
        amount = first_match(_AMOUNT, body)
        if amount is None:
            return None

        transaction_date, synthetic = resolve_date(body, self.name)
        merchant = clean_merchant(text_between(body, _MERCHANT_STARTS, _MERCHANT_ENDS))
        transaction_id = first_match(_TRANSACTION_ID, body)

        return self.build(
            subject,
            body,
            amount=parse_amount(amount.group("amount"), "VND"),
            currency="VND",
            merchant=merchant or self.default_merchant,
            transaction_date=transaction_date,
            synthetic_date=synthetic,
            card_number=transaction_id.group(1) if transaction_id else "",
            cardholder=self.default_merchant,
        )

    def classify(self, body: str) -> str:
        for pattern, label in _SUBTYPES:
            if pattern.search(body):
                return label
        return "MoMo Payment"
