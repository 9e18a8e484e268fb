"""Message source adapter protocol."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from expense_ingest.models import RawMessage


@runtime_checkable
class MessageSource(Protocol):
    """Protocol for mailbox adapters feeding the ingestion pipeline."""

    account: str

    def fetch_trusted_unread(self) -> Iterator[RawMessage]: ...

    def mark_as_read(self, uids: Sequence[str]) -> None: ...
