"""Grab e-receipts: food and mart delivery, ride-hailing, express."""

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

_CURRENCY = r"(?:(?-i:[A-Z]{3})|₫|đ)(?![^\W\d_])"
_MONEY = (
    rf"\s*:?\s*(?P<cur_pre>{_CURRENCY})?\s*(?P<amount>\d[\d.,]*)"
    rf"\s*(?P<cur_post>{_CURRENCY})?"
)
_TOTAL = compile_all([
    rf"\bTotal Paid{_MONEY}",
    rf"Tổng (?:thanh toán|cộng){_MONEY}",
    rf"\bTotal\b{_MONEY}",
])
_BOOKING = compile_all([
    r"(?:Booking ID|Mã đặt chỗ|Mã đơn hàng|Order ID)\s*:?\s*"
    r"([A-Z0-9][A-Z0-9-]{5,})",
])

_MERCHANT_STARTS = (
    r"Ordered from\s*:?",
    r"Đặt từ\s*:?",
    r"Restaurant\s*:?",
    r"Nhà hàng\s*:?",
    r"Store\s*:?",
)
_MERCHANT_ENDS = (
    r"Delivered to",
    r"Deliver to",
    r"Giao đến",
    r"Booking ID",
    r"Mã đặt chỗ",
    r"Order Details",
    r"Chi tiết",
    r"\d+\s*x\s",
)
_MERCHANT_NOISE = ("Hope you enjoyed", "Chúc bạn ngon miệng")

_SUBTYPES = (
    (re.compile(r"grabmart", re.I), "GrabMart"),
    (
        re.compile(
            r"grabfood|ordered from|đặt từ|delivered to|enjoyed your food", re.I
        ),
        "GrabFood",
    ),
    (re.compile(r"grabexpress|package|gửi hàng", re.I), "GrabExpress"),
    (
        re.compile(
            r"grab(?:car|bike|taxi)|pick-?up location|drop-?off|điểm đón"
            r"|your ride|chuyến đi",
            re.I,
        ),
        "GrabRide",
    ),
)
_CURRENCY_SYMBOLS = {"₫": "VND", "đ": "VND"}


class GrabParser(ProviderParser):
    """Receipts from no-reply@grab.com."""

    name = "grab"
    senders = ("no-reply@grab.com", "noreply@grab.com")
    signals = compile_all([
        r"\bgrab(?:food|car|bike|mart|express|taxi)?\b"
        r".*(?:e-?receipt|biên nhận|hóa đơn)",
    ])
    non_transactional = compile_all([
        r"order for later",
        r"scheduled order",
        r"pending order",
        r"đơn hàng đặt trước",
        r"order (?:has been |was )?cancell?ed",
        r"đã (?:bị )?hủy",
        r"payment failed|thanh toán không thành công",
    ])
    default_merchant = "Grab"
    ai_hint = (
        "Grab receipts show 'Total Paid', a Booking ID, and for deliveries the "
        "restaurant after 'Ordered from'. Orders scheduled for later or cancelled "
        "are not completed transactions."
    )

    def extract(self, subject: str, body: str) -> ParsedTransaction | None:
        total = first_match(_TOTAL, body)
        if total is None:
            return None

        raw_currency = total.group("cur_pre") or total.group("cur_post") or "VND"
        currency = _CURRENCY_SYMBOLS.get(raw_currency, raw_currency)

        subtype = self.classify(body)
        merchant = ""
        if subtype in ("GrabFood", "GrabMart"):
            merchant = clean_merchant(
                text_between(body, _MERCHANT_STARTS, _MERCHANT_ENDS), _MERCHANT_NOISE
            )

        transaction_date, synthetic = resolve_date(body, self.name)
        booking = first_match(_BOOKING, body)

        return self.build(
            subject,
            body,
            amount=parse_amount(total.group("amount"), currency),
            currency=currency,
            merchant=merchant or subtype,
            transaction_date=transaction_date,
            synthetic_date=synthetic,
            transaction_type=subtype,
            card_number=booking.group(1) if booking else "",
            cardholder=self.default_merchant,
        )

    def classify(self, body: str) -> str:
        for pattern, label in _SUBTYPES:
            if pattern.search(body):
                return label
        return "Grab"
