"""Shared field extraction helpers and the provider parser base class."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, ClassVar

from expense_ingest.models import (
    Extraction,
    ParsedTransaction,
    SkipReason,
    coerce_transaction,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

logger = logging.getLogger(__name__)

# Vietnamese providers send local wall-clock times without a zone.
PROVIDER_TZ = timezone(timedelta(hours=7))

ZERO_DECIMAL_CURRENCIES = frozenset({"VND", "JPY", "KRW"})

_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}  # fmt: skip
_MONTH_ALT = "Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec"
_TIME = r"(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?"
_DMY = r"(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})"
_OPT_TIME = rf"(?:\s*,?\s*(?:at\s+)?{_TIME})?"

# Alternatives tried in order; group layout is normalised by _DATE_LAYOUTS.
_DATE_PATTERNS = (
    # 14:25 19/10/2026, 14:25 - 19/10/2026
    re.compile(rf"{_TIME}\s*(?:,|-|ngày)?\s*{_DMY}", re.I),
    # 19/10/2026 14:25, 19/10/2026 lúc 14:25
    re.compile(rf"{_DMY}\s*(?:,|-|lúc|at)?\s*{_TIME}", re.I),
    # Oct 19, 2026 10:23 AM
    re.compile(
        rf"\b({_MONTH_ALT})[a-z]*\.?\s+(\d{{1,2}}),?\s+(\d{{4}}){_OPT_TIME}", re.I
    ),
    # 19 Oct 2026 10:23
    re.compile(
        rf"\b(\d{{1,2}})\s+({_MONTH_ALT})[a-z]*\.?,?\s+(\d{{4}}){_OPT_TIME}", re.I
    ),
    # 19/10/2026 without a time
    re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"),
)
_DATE_LAYOUTS = (
    # (day, month, year, hour, minute, second, meridiem) group indexes
    (5, 6, 7, 1, 2, 3, 4),
    (1, 2, 3, 4, 5, 6, 7),
    (2, 1, 3, 4, 5, 6, 7),
    (1, 2, 3, 4, 5, 6, 7),
    (1, 2, 3, None, None, None, None),
)

_TAG_REMNANT_RE = re.compile(r"<[^>]*>|&[a-z]+;|&#\d+;")
_TRAILING_NOISE_RE = re.compile(r"[\s.,;:|\-–]+$")


def parse_amount(raw: str | None, currency: str | None = None) -> Decimal | None:
    """Parse a locale-formatted amount.

    ``"38,000"``, ``"38.000"`` and ``"38000"`` all give 38000. A single
    separator followed by exactly three digits is a thousands separator;
    with both separators present the last one is the decimal point.

    For a currency without minor units (VND, JPY, KRW) a lone separator is
    always a group separator, so ``"38,00"`` gives 3800 rather than 38.00.
    """
    if not raw:
        return None
    grouping_only = (currency or "").strip().upper() in ZERO_DECIMAL_CURRENCIES
    cleaned = re.sub(r"[^\d.,]", "", raw).strip(".,")
    if not cleaned or not any(ch.isdigit() for ch in cleaned):
        return None

    last_dot, last_comma = cleaned.rfind("."), cleaned.rfind(",")
    if last_dot != -1 and last_comma != -1:
        decimal_sep = "." if last_dot > last_comma else ","
        integer, _, fraction = cleaned.rpartition(decimal_sep)
        integer = integer.replace(".", "").replace(",", "")
    elif last_dot != -1 or last_comma != -1:
        sep = "." if last_dot != -1 else ","
        integer, _, fraction = cleaned.rpartition(sep)
        if grouping_only or cleaned.count(sep) > 1 or len(fraction) == 3:
            integer, fraction = cleaned.replace(sep, ""), ""
    else:
        integer, fraction = cleaned, ""

    try:
        return Decimal(f"{integer or '0'}.{fraction}" if fraction else integer)
    except InvalidOperation:
        return None


def _build_datetime(
    match: re.Match[str], layout: tuple[int | None, ...], tz: timezone
) -> datetime:
    def group(index: int | None) -> str | None:
        return match.group(index) if index is not None else None

    fields = (group(i) for i in layout)
    day_s, month_s, year_s, hour_s, minute_s, second_s, meridiem = fields
    if not (day_s and month_s and year_s):
        msg = "date match without day, month and year"
        raise ValueError(msg)

    month = int(month_s) if month_s.isdigit() else _MONTHS[month_s[:3].lower()]
    hour = int(hour_s) if hour_s else 0
    if meridiem:
        meridiem = meridiem.lower()
        if meridiem == "pm" and hour < 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0

    return datetime(
        int(year_s),
        month,
        int(day_s),
        hour,
        int(minute_s) if minute_s else 0,
        int(second_s) if second_s else 0,
        tzinfo=tz,
    )


def parse_local_datetime(text: str, tz: timezone = PROVIDER_TZ) -> datetime | None:
    """Find the first date/time token in ``text`` and return an aware datetime.

    Supports time-then-day/month/year, day/month/year-then-time, and
    month-name forms. Times without a zone are taken in ``tz``.
    """
    for pattern, layout in zip(_DATE_PATTERNS, _DATE_LAYOUTS, strict=True):
        for match in pattern.finditer(text):
            try:
                return _build_datetime(match, layout, tz)
            except (ValueError, KeyError):
                continue
    return None


def resolve_date(
    text: str, provider: str, tz: timezone = PROVIDER_TZ
) -> tuple[datetime, bool]:
    """Return ``(transaction_date, synthetic)``.

    Falls back to the current time when no date token parses; the caller
    keeps the record and reports it as synthetic.
    """
    parsed = parse_local_datetime(text, tz)
    if parsed is not None:
        return parsed, False
    logger.warning(
        "No transaction date found in %s email, using processing time", provider
    )
    return datetime.now(tz=tz), True


def first_match(patterns: Iterable[re.Pattern[str]], text: str) -> re.Match[str] | None:
    """Try each pattern in order; first match wins."""
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def text_between(text: str, starts: Sequence[str], ends: Sequence[str]) -> str | None:
    """Return the shortest text between any start anchor and any end anchor.

    Anchors are regex fragments. When no end anchor follows, the capture
    runs to the end of the text.
    """
    start_alt = "|".join(starts)
    end_alt = "|".join(ends)
    pattern = re.compile(
        rf"(?:{start_alt})\s*(.+?)\s*(?:{end_alt}|$)", re.IGNORECASE | re.DOTALL
    )
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def clean_merchant(value: str | None, boilerplate: Sequence[str] = ()) -> str:
    """Strip markup remnants, trailing boilerplate phrases and punctuation."""
    if not value:
        return ""
    cleaned = _TAG_REMNANT_RE.sub(" ", value)
    for phrase in boilerplate:
        idx = cleaned.lower().find(phrase.lower())
        if idx != -1:
            cleaned = cleaned[:idx]
    cleaned = " ".join(cleaned.split())
    cleaned = _TRAILING_NOISE_RE.sub("", cleaned)
    return cleaned[:120].strip()


def compile_all(
    patterns: Iterable[str], flags: int = re.IGNORECASE
) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, flags) for p in patterns)


class ProviderParser(ABC):
    """Deterministic parser for one sender's notification format.

    Subclasses declare their sender addresses, the content signals that
    identify their mail, and the patterns that mark mail which is not a
    completed transaction.
    """

    name: ClassVar[str]
    senders: ClassVar[tuple[str, ...]] = ()
    signals: ClassVar[tuple[re.Pattern[str], ...]] = ()
    non_transactional: ClassVar[tuple[re.Pattern[str], ...]] = ()
    default_merchant: ClassVar[str] = "Unknown"
    ai_hint: ClassVar[str] = ""

    def matches_sender(self, sender: str) -> bool:
        sender = sender.strip().lower()
        for known in self.senders:
            domain = known.split("@")[-1]
            if sender == known or sender.endswith(("@" + domain, "." + domain)):
                return True
        return False

    def matches_content(self, subject: str, body: str) -> bool:
        haystack = f"{subject}\n{body}"
        return any(signal.search(haystack) for signal in self.signals)

    def matches(self, sender: str, subject: str, body: str) -> bool:
        return self.matches_sender(sender) or self.matches_content(subject, body)

    def skip_reason(self, subject: str, body: str) -> str | None:
        """Return the matched non-transactional phrase, or None."""
        haystack = f"{subject}\n{body}"
        for pattern in self.non_transactional:
            match = pattern.search(haystack)
            if match:
                return match.group(0)
        return None

    def parse(self, subject: str, body: str) -> Extraction:
        """Run the early exit, then field extraction."""
        phrase = self.skip_reason(subject, body)
        if phrase is not None:
            logger.info("Skipping %s email: non-transactional (%r)", self.name, phrase)
            return Extraction.skipped(SkipReason.NOT_TRANSACTION, provider=self.name)

        transaction = self.extract(subject, body)
        if transaction is None:
            logger.info("%s email is missing a mandatory field", self.name)
            return Extraction.skipped(SkipReason.MISSING_FIELD, provider=self.name)
        return Extraction(transaction=transaction, tier=self.name, provider=self.name)

    @abstractmethod
    def extract(self, subject: str, body: str) -> ParsedTransaction | None:
        """Extract the transaction fields from a normalized body."""

    @abstractmethod
    def classify(self, body: str) -> str:
        """Return the sub-type tag for this provider's mail."""

    def build(
        self, subject: str, body: str, **fields: object
    ) -> ParsedTransaction | None:
        """Fill provenance fields and validate."""
        fields.setdefault("email_subject", subject)
        fields.setdefault("transaction_type", self.classify(body))
        return coerce_transaction(**fields)
