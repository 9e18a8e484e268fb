"""Reduce email bodies to single-line plain text for extraction."""

from __future__ import annotations

import re
from html.parser import HTMLParser

_WHITESPACE_RE = re.compile(r"\s+")
_HTML_DOCUMENT_RE = re.compile(r"\s*<(?:!doctype\b|html\b)", re.I)


def strip_markup(content: str) -> str:
    """Remove style/script blocks and tags, collapse whitespace, trim."""
    if not content:
        return ""
    stripper = _MarkupStripper()
    stripper.feed(content)
    stripper.close()
    return collapse_whitespace(stripper.get_text())


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def message_text(text_body: str | None, html_body: str | None) -> str:
    """Normalize the plain-text part when present, otherwise the HTML part.

    A plain-text part is only whitespace-collapsed, so ``<https://...>``
    autolinks survive. Senders that put a whole HTML document into the
    text part are stripped like the HTML part.
    """
    if text_body and text_body.strip():
        if _HTML_DOCUMENT_RE.match(text_body):
            return strip_markup(text_body)
        return collapse_whitespace(text_body)
    if html_body:
        return strip_markup(html_body)
    return ""


class _MarkupStripper(HTMLParser):
    """HTMLParser subclass that drops tags and skipped blocks.

    Every tag boundary becomes a space so table cells and paragraphs do not
    run together.
    """

    _SKIPPED = frozenset({"style", "script", "head"})

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in self._SKIPPED:
            self._skip_depth += 1
        self._parts.append(" ")

    def handle_startendtag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        self._parts.append(" ")

    def handle_endtag(self, tag: str) -> None:
        if tag in self._SKIPPED and self._skip_depth:
            self._skip_depth -= 1
        self._parts.append(" ")

    def handle_data(self, data: str) -> None:
        if not self._skip_depth:
            self._parts.append(data)

    def get_text(self) -> str:
        return "".join(self._parts)
