"""Provider registry and classification."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from expense_ingest.providers.grab import GrabParser
from expense_ingest.providers.momo import MomoParser
from expense_ingest.providers.vib import VibParser

if TYPE_CHECKING:
    from collections.abc import Iterable

    from expense_ingest.providers.base import ProviderParser

logger = logging.getLogger(__name__)


class ProviderRouter:
    """Map provider names to parsers and pick one per message.

    Sender addresses are checked first across all providers; content
    signals are only consulted when no sender matches. Ties go to the
    provider registered first.
    """

    def __init__(self, parsers: Iterable[ProviderParser] = ()) -> None:
        self._parsers: dict[str, ProviderParser] = {}
        for parser in parsers:
            self.register(parser)

    def register(self, parser: ProviderParser) -> ProviderParser:
        if parser.name in self._parsers:
            msg = f"Provider {parser.name!r} is already registered"
            raise ValueError(msg)
        self._parsers[parser.name] = parser
        return parser

    def get(self, name: str) -> ProviderParser | None:
        return self._parsers.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._parsers)

    def classify(self, sender: str, subject: str, body: str) -> ProviderParser | None:
        """Return the parser for this message, or None when nothing matches."""
        for parser in self._parsers.values():
            if parser.matches_sender(sender):
                logger.debug("Routed %s to %s by sender", sender, parser.name)
                return parser
        for parser in self._parsers.values():
            if parser.matches_content(subject, body):
                logger.debug("Routed %s to %s by content", sender, parser.name)
                return parser
        return None


def default_router() -> ProviderRouter:
    """Router with every built-in provider."""
    return ProviderRouter([VibParser(), GrabParser(), MomoParser()])
