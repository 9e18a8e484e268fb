"""Configuration via environment variables."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

DEFAULT_TRUSTED_SENDERS = (
    "info@card.vib.com.vn",
    "no-reply@grab.com",
    "no-reply@momo.vn",
)

_EXTRA_ACCOUNT_RE = re.compile(r"^EMAIL_(\d+)_USER$")
_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class MailboxConfig:
    """IMAP connection configuration for one mailbox account."""

    host: str
    username: str
    password: str
    port: int = 993
    use_ssl: bool = True
    folder: str = "INBOX"


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUTHY


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        msg = f"{name} must be an integer, got {value!r}"
        raise ValueError(msg) from None


def _mailbox_from_env(prefix: str) -> MailboxConfig | None:
    """Build one account from ``{prefix}_USER`` / ``{prefix}_PASSWORD`` etc.

    Returns None when the account has no credentials; such an account is
    simply left out of the sync run.
    """
    username = os.environ.get(f"{prefix}_USER")
    password = os.environ.get(f"{prefix}_PASSWORD")
    if not username or not password:
        return None

    return MailboxConfig(
        host=os.environ.get(f"{prefix}_HOST") or "imap.gmail.com",
        username=username,
        password=password,
        port=_env_int(f"{prefix}_PORT", 993),
        use_ssl=_env_flag(f"{prefix}_TLS", True),
        folder=os.environ.get(f"{prefix}_FOLDER") or "INBOX",
    )


def get_mailbox_configs() -> list[MailboxConfig]:
    """Return every configured mailbox account.

    The primary account reads EMAIL_USER, EMAIL_PASSWORD, EMAIL_HOST
    (default imap.gmail.com), EMAIL_PORT (default 993), EMAIL_TLS
    (default true) and EMAIL_FOLDER (default INBOX). Additional accounts
    use the same names with a numeric infix: EMAIL_2_USER, EMAIL_2_PASSWORD...
    """
    configs: list[MailboxConfig] = []

    primary = _mailbox_from_env("EMAIL")
    if primary is not None:
        configs.append(primary)

    indexes = sorted(
        int(match.group(1))
        for key in os.environ
        if (match := _EXTRA_ACCOUNT_RE.match(key))
    )
    for index in indexes:
        extra = _mailbox_from_env(f"EMAIL_{index}")
        if extra is not None:
            configs.append(extra)

    return configs


def get_trusted_senders() -> tuple[str, ...]:
    """Return the lowercase sender allow-list.

    TRUSTED_SENDERS is a comma-separated list of addresses; it defaults to
    the senders of the built-in providers.
    """
    raw = os.environ.get("TRUSTED_SENDERS")
    if not raw or not raw.strip():
        return DEFAULT_TRUSTED_SENDERS
    return tuple(
        address.strip().lower() for address in raw.split(",") if address.strip()
    )


def get_recency_days() -> int:
    """Return how many days back the mailbox search looks (default 30)."""
    days = _env_int("SYNC_RECENCY_DAYS", 30)
    if days < 1:
        msg = "SYNC_RECENCY_DAYS must be at least 1"
        raise ValueError(msg)
    return days


def get_mark_read() -> bool:
    """Return whether ingested messages are flagged as read after a sync."""
    return _env_flag("EMAIL_MARK_READ", False)


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_anthropic_api_key() -> str | None:
    """Return the ANTHROPIC_API_KEY, or None when AI extraction is disabled."""
    key = os.environ.get("ANTHROPIC_API_KEY")
    return key or None


def get_llm_model() -> str:
    """Return the LLM model identifier.

    Defaults to claude-haiku-4-5-20251001.
    """
    return os.environ.get("LLM_MODEL", "claude-haiku-4-5-20251001")


def get_llm_timeout() -> float:
    """Return the per-request AI extraction timeout in seconds (default 20)."""
    value = os.environ.get("LLM_TIMEOUT_SECONDS", "20")
    try:
        timeout = float(value)
    except ValueError:
        msg = f"LLM_TIMEOUT_SECONDS must be a number, got {value!r}"
        raise ValueError(msg) from None
    if timeout <= 0:
        msg = "LLM_TIMEOUT_SECONDS must be positive"
        raise ValueError(msg)
    return timeout


def get_log_level() -> str:
    """Return the LOG_LEVEL name (default INFO)."""
    return os.environ.get("LOG_LEVEL", "INFO").upper()
