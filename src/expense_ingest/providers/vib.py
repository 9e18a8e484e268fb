"""VIB (Vietnam International Bank) card transaction notifications."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from expense_ingest.providers.base import (
    ProviderParser,
    clean_merchant,
    compile_all,
    first_match,
    parse_amount,
    parse_local_datetime,
    resolve_date,
    text_between,
)

if TYPE_CHECKING:
    from expense_ingest.models import ParsedTransaction

_CARD_NUMBER = compile_all([r"(?:Card number|Số thẻ)\s*:\s*(\d+[*xX]+\d+)"])
_CARDHOLDER = compile_all([
    r"(?:Cardholder|Chủ thẻ)\s*:\s*(.+?)\s*"
    r"(?=(?<![Cc]ard )\b(?:Transaction|Giao dịch)\s*:|Value\s*:|Giá trị\s*:|$)",
])
_TRANSACTION = compile_all([
    r"(?<![Cc]ard )\b(?:Transaction|Giao dịch)\s*:\s*(.+?)\s*"
    r"(?=Value\s*:|Giá trị\s*:|Amount\s*:|Số tiền\s*:|$)",
])
_LABEL = r"(?:Value|Giá trị|Amount|Số tiền)\s*:\s*"
_VALUE = compile_all([
    rf"{_LABEL}(?P<amount>\d[\d.,]*)\s*(?P<currency>(?-i:[A-Z]{{3}}))\b",
    rf"{_LABEL}(?P<currency>(?-i:[A-Z]{{3}}))\s*(?P<amount>\d[\d.,]*)",
])
_TIME_LABEL = compile_all([r"(?:\bAt|Vào lúc|Thời gian|Time)\s*:\s*(.{0,40})"])

_MERCHANT_STARTS = (
    r"\b(?-i:At|Tại)(?:\s*/\s*(?-i:At|Tại))?(?:\s*:\s*+|\s++)(?!\d)",
)
_MERCHANT_ENDS = (
    r"For more information",
    r"Để biết thêm",
    r"Quý khách vui lòng",
    r"Thank you",
    r"Cảm ơn",
    r"Trân trọng",
)
_MERCHANT_NOISE = ("VIB Card Center", "Hotline", "Visit card.vib.com.vn")

_SUBTYPES = (
    (re.compile(r"refund|hoàn tiền", re.I), "Refund"),
    (re.compile(r"withdraw|rút tiền", re.I), "Cash Withdrawal"),
    (re.compile(r"online|trực tuyến|e-?commerce", re.I), "Online Payment"),
)


class VibParser(ProviderParser):
    """Card notifications from info@card.vib.com.vn (English/Vietnamese)."""

    name = "vib"
    senders = ("info@card.vib.com.vn",)
    signals = compile_all([
        r"\bvib\b",
        r"vietnam international bank",
        r"vib online",
        r"card\.vib\.com\.vn",
        r"card number\s*:",
    ])
    non_transactional = compile_all([
        r"\bOTP\s*(?:code)?\s*(?:is|là)\s*:?\s*\d",
        r"(?:transaction|giao dịch)\s+(?:was\s+)?"
        r"(?:declined|failed|unsuccessful|không thành công|bị từ chối)",
        r"\bpending\b|chờ xử lý",
    ])
    default_merchant = "Unknown"
    ai_hint = (
        "VIB card notifications list Card number, Cardholder, Transaction, "
        "Value (amount and currency), At (time then day/month/year) and the "
        "merchant after a second 'At'/'Tại'."
    )

    def extract(self, subject: str, body: str) -> ParsedTransaction | None:
        value = first_match(_VALUE, body)
        if value is None:
            return None

        card = first_match(_CARD_NUMBER, body)
        holder = first_match(_CARDHOLDER, body)
        transaction = first_match(_TRANSACTION, body)

        time_label = first_match(_TIME_LABEL, body)
        transaction_date = None
        if time_label is not None:
            transaction_date = parse_local_datetime(time_label.group(1))
        synthetic = False
        if transaction_date is None:
            transaction_date, synthetic = resolve_date(body, self.name)

        merchant = clean_merchant(
            text_between(body, _MERCHANT_STARTS, _MERCHANT_ENDS), _MERCHANT_NOISE
        )

        return self.build(
            subject,
            body,
            amount=parse_amount(value.group("amount"), value.group("currency")),
            currency=value.group("currency"),
            merchant=merchant or self.default_merchant,
            transaction_date=transaction_date,
            synthetic_date=synthetic,
            transaction_type=(
                transaction.group(1) if transaction else self.classify(body)
            ),
            card_number=card.group(1) if card else "",
            cardholder=holder.group(1) if holder else "",
        )

    def classify(self, body: str) -> str:
        for pattern, label in _SUBTYPES:
            if pattern.search(body):
                return f"VIB {label}"
        return "VIB Card Purchase"
