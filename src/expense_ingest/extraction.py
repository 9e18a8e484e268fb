"""Two-tier transaction extraction: LLM first, provider regexes as fallback."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_ai import Agent
from pydantic_ai.models.anthropic import AnthropicModel
from pydantic_ai.providers.anthropic import AnthropicProvider
from pydantic_ai.settings import ModelSettings

from expense_ingest.config import get_anthropic_api_key, get_llm_model, get_llm_timeout
from expense_ingest.models import (
    Extraction,
    ParsedTransaction,
    SkipReason,
    coerce_transaction,
)
from expense_ingest.normalizer import message_text
from expense_ingest.providers.base import PROVIDER_TZ, parse_amount
from expense_ingest.router import ProviderRouter, default_router

if TYPE_CHECKING:
    from expense_ingest.models import RawMessage
    from expense_ingest.providers.base import ProviderParser

logger = logging.getLogger(__name__)

MAX_PROMPT_BODY_CHARS = 2000

_SYSTEM_PROMPT = """\
You extract completed payments from bank and service notification emails, \
written in English or Vietnamese. Reply with a single JSON object and nothing \
else, in exactly one of these two shapes:

{"amount": 150000, "currency": "VND", "merchant": "Highlands Coffee", \
"transactionDate": "2026-10-19T14:25:00+07:00", "transactionType": "Card Purchase", \
"cardNumber": "4123***5678", "cardholder": "NGUYEN VAN A"}

{"skip": true}

Use the skip shape for anything that is not a completed payment: pending or \
scheduled orders, order confirmations, cancellations, OTP codes, promotions, \
and money received. amount is a plain number without thousands separators. \
currency is an ISO 4217 code. Times without a zone are Vietnam time (+07:00). \
Use an empty string for cardNumber or cardholder when absent.\
"""

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*|\s*```\s*$")


class AiPayload(BaseModel):
    """Raw shape of the model's JSON reply, before transaction validation."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    skip: bool = False
    amount: int | float | str | None = None
    currency: str | None = None
    merchant: str | None = None
    transaction_date: str | None = Field(default=None, alias="transactionDate")
    transaction_type: str | None = Field(default=None, alias="transactionType")
    card_number: str | None = Field(default=None, alias="cardNumber")
    cardholder: str | None = None


def create_extraction_agent(
    api_key: str, model_name: str | None = None, timeout: float | None = None
) -> Agent[None, str]:
    """Create a pydantic-ai Agent that answers with raw JSON text."""
    model = AnthropicModel(
        model_name or get_llm_model(),
        provider=AnthropicProvider(api_key=api_key),
    )
    return Agent(
        model,
        output_type=str,
        system_prompt=_SYSTEM_PROMPT,
        model_settings=ModelSettings(
            temperature=0.0,
            timeout=timeout if timeout is not None else get_llm_timeout(),
        ),
    )


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    return _FENCE_RE.sub("", text).strip()


def _build_prompt(subject: str, body: str, provider: ProviderParser | None) -> str:
    """Build the user prompt from the subject and normalized body."""
    parts = []
    if provider is not None and provider.ai_hint:
        parts.append(f"Format notes: {provider.ai_hint}")
    parts.extend(
        [
            f"Subject: {subject}",
            "",
            "--- Email Body ---",
            body[:MAX_PROMPT_BODY_CHARS] or "(no body content)",
        ]
    )
    return "\n".join(parts)


def _ai_amount(
    value: int | float | str | None, currency: str | None
) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return parse_amount(value, currency)
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _ai_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=PROVIDER_TZ)
    return parsed


def parse_ai_response(
    text: str, subject: str, provider: ProviderParser | None = None, body: str = ""
) -> ParsedTransaction | None:
    """Validate the model's reply the same way as a regex candidate.

    Returns None for malformed JSON, the skip sentinel, or a candidate
    missing a mandatory field.
    """
    try:
        payload = AiPayload.model_validate_json(strip_code_fences(text))
    except ValidationError:
        logger.warning("AI extraction returned malformed JSON")
        return None

    if payload.skip:
        logger.info("AI extraction flagged the message as non-transactional")
        return None

    transaction_date = _ai_date(payload.transaction_date)
    synthetic = transaction_date is None
    if transaction_date is None:
        logger.warning("AI extraction returned no usable date, using processing time")
        transaction_date = datetime.now(tz=PROVIDER_TZ)

    transaction_type = payload.transaction_type
    if not transaction_type and provider is not None:
        transaction_type = provider.classify(body)

    return coerce_transaction(
        amount=_ai_amount(payload.amount, payload.currency or "VND"),
        currency=payload.currency or "VND",
        merchant=payload.merchant or "",
        transaction_date=transaction_date,
        synthetic_date=synthetic,
        transaction_type=transaction_type or "email",
        card_number=payload.card_number or "",
        cardholder=payload.cardholder or "",
        email_subject=subject,
    )


class ExtractionEngine:
    """Turn one message into zero or one transaction.

    Order per message: provider early exit for known non-transactional
    mail, then the AI tier when an agent is configured, then the routed
    provider's regex parser.
    """

    def __init__(
        self,
        router: ProviderRouter | None = None,
        *,
        agent: Agent[None, str] | None = None,
    ) -> None:
        self.router = router or default_router()
        self.agent = agent

    @classmethod
    def from_env(cls, router: ProviderRouter | None = None) -> ExtractionEngine:
        """Build an engine; the AI tier is enabled only with an API key."""
        api_key = get_anthropic_api_key()
        agent = create_extraction_agent(api_key) if api_key else None
        if agent is None:
            logger.info("ANTHROPIC_API_KEY not set, using regex extraction only")
        return cls(router, agent=agent)

    @property
    def ai_enabled(self) -> bool:
        return self.agent is not None

    def extract(self, message: RawMessage) -> Extraction:
        """Extract from a fetched message, tagging the result with its Message-ID."""
        body = message_text(message.text_body, message.html_body)
        extraction = self.extract_text(message.sender, message.subject, body)
        if extraction.transaction is not None:
            extraction.transaction = extraction.transaction.model_copy(
                update={"email_message_id": message.message_id}
            )
        return extraction

    def extract_text(self, sender: str, subject: str, body: str) -> Extraction:
        """Extract from an already normalized body."""
        provider = self.router.classify(sender, subject, body)

        if provider is not None and provider.skip_reason(subject, body) is not None:
            return provider.parse(subject, body)

        if self.agent is not None:
            transaction = self._extract_with_ai(self.agent, subject, body, provider)
            if transaction is not None:
                return Extraction(
                    transaction=transaction,
                    tier="ai",
                    provider=provider.name if provider else None,
                )

        if provider is None:
            logger.info("No provider matches message from %s", sender)
            return Extraction.skipped(SkipReason.NO_PROVIDER)

        return provider.parse(subject, body)

    def _extract_with_ai(
        self,
        agent: Agent[None, str],
        subject: str,
        body: str,
        provider: ProviderParser | None,
    ) -> ParsedTransaction | None:
        prompt = _build_prompt(subject, body, provider)
        try:
            result: Any = agent.run_sync(prompt)
        except Exception:
            logger.warning("AI extraction failed, falling back to regex", exc_info=True)
            return None
        output = result.output
        if not isinstance(output, str):
            logger.warning(
                "AI extraction returned %s, expected text", type(output).__name__
            )
            return None
        return parse_ai_response(output, subject, provider, body)
