"""Redaction of credentials, personal paths and other sensitive values from outbound text.

Every prompt handed to an LLM provider passes through :func:`sanitize` or
:func:`sanitize_messages` first. Stages run in a fixed order and each stage
consumes the output of the previous one:

1. database URLs
2. credentials (most specific patterns first)
3. JSON/config ``password`` values
4. user-home paths
5. email addresses
6. IPv4 addresses
7. environment variable references
8. sensitive URL query parameters

Placeholders are numbered per call; ``sanitize_messages`` shares one counter
set across all messages of the batch.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Iterable, Mapping
from urllib.parse import unquote_plus, urlsplit

# Patterns with a ``lead`` group keep that prefix and redact only what follows.
DATABASE_URL_PATTERNS = [
    re.compile(r"(?:postgres|postgresql|mysql|mongodb|redis)://[^\s\"'`<>]+"),
]

CREDENTIAL_PATTERNS = [
    re.compile(r"\bsk-ant-[a-zA-Z0-9-]{6,}"),
    # Stripe keys accept both sk-test_ and sk_test_ separators
    re.compile(r"\bsk[-_](?:test|live)[-_][a-zA-Z0-9_-]{10,}"),
    re.compile(r"\bpk[-_](?:test|live)[-_][a-zA-Z0-9_-]{10,}"),
    re.compile(r"\brk_(?:live|test)_[a-zA-Z0-9_-]{10,}"),
    re.compile(r"\bsk-[a-zA-Z0-9]{6,}"),
    re.compile(r"\bAKIA[A-Z0-9]{16}\b"),
    re.compile(r"(?P<lead>AWS_SECRET_ACCESS_KEY=|aws_secret_access_key=)[A-Za-z0-9+/=]{40}"),
    re.compile(r"(?P<lead>(?:api_key|apikey)=)[a-zA-Z0-9_-]{16,}", re.IGNORECASE),
    re.compile(r"(?P<lead>Bearer\s)[a-zA-Z0-9._-]{20,}"),
    re.compile(r"\bgh[psohr]_[a-zA-Z0-9]{36,}"),
    re.compile(r"\bxox[bp]-[0-9]+-[0-9]+-[a-zA-Z0-9]+"),
    re.compile(r"\bnpm_[a-zA-Z0-9]{36,}"),
    re.compile(r"\bSG\.[a-zA-Z0-9_-]{20,}\.[a-zA-Z0-9_-]{20,}"),
    re.compile(r"\beyJ[a-zA-Z0-9_-]+\.eyJ[a-zA-Z0-9_-]+\.[a-zA-Z0-9_-]+"),
    re.compile(r"(?P<lead>(?:secret|token|password|key)=)[a-f0-9]{32,}", re.IGNORECASE),
    re.compile(r"(?P<lead>://[^:/\s@]+:)[^@\s/]+(?=@)"),
]

PASSWORD_PATTERNS = [
    re.compile(r"(['\"])password\1\s*:\s*(['\"])[^'\"]+\2", re.IGNORECASE),
]

PATH_PATTERNS = [
    re.compile(r"/(?:Users|home)/[a-zA-Z0-9_.-]+(?:/[^\s\"'`]+)?", re.IGNORECASE),
    re.compile(r"[A-Z]:\\Users\\[a-zA-Z0-9_.-]+(?:\\[^\s\"'`]+)?", re.IGNORECASE),
]

EMAIL_PATTERNS = [
    re.compile(r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b"),
]

IP_PATTERNS = [
    re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b"),
]

ENV_VAR_PATTERNS = [
    re.compile(r"\$\{[A-Z_][A-Z0-9_]*\}"),
    re.compile(r"\$[A-Z_][A-Z0-9_]+\b"),
]

URL_PATTERN = re.compile(r"https?://[^\s\"'`<>]+")

SENSITIVE_URL_PARAMS = frozenset(
    {"token", "key", "secret", "password", "auth", "api_key", "apikey", "access_token"}
)


@dataclass
class SanitizationMetadata:
    credentials_redacted: int = 0
    paths_redacted: int = 0
    emails_redacted: int = 0
    urls_redacted: int = 0
    ips_redacted: int = 0
    env_vars_redacted: int = 0
    database_urls_redacted: int = 0

    @property
    def total(self) -> int:
        return sum(asdict(self).values())


@dataclass
class SanitizationResult:
    content: str
    metadata: SanitizationMetadata = field(default_factory=SanitizationMetadata)


@dataclass
class SanitizeMessagesResult:
    messages: list[dict[str, Any]]
    total_redactions: dict[str, int]


class _SanitizationState:
    """Placeholder counters shared by every stage of one sanitization call."""

    def __init__(self) -> None:
        self.metadata = SanitizationMetadata()

    def next_credential(self) -> str:
        self.metadata.credentials_redacted += 1
        return f"[CREDENTIAL_{self.metadata.credentials_redacted}]"

    def next_path(self) -> str:
        self.metadata.paths_redacted += 1
        return f"[PATH_{self.metadata.paths_redacted}]"

    def next_email(self) -> str:
        self.metadata.emails_redacted += 1
        return f"[EMAIL_{self.metadata.emails_redacted}]"

    def next_ip(self) -> str:
        self.metadata.ips_redacted += 1
        return "[IP_ADDRESS]"

    def next_env_var(self) -> str:
        self.metadata.env_vars_redacted += 1
        return f"[ENV_VAR_{self.metadata.env_vars_redacted}]"

    def next_database_url(self) -> str:
        self.metadata.database_urls_redacted += 1
        return "[DATABASE_URL]"


def _apply(
    text: str, patterns: Iterable[re.Pattern[str]], placeholder: Callable[[], str]
) -> str:
    def _replace(match: re.Match[str]) -> str:
        lead = match.groupdict().get("lead") or ""
        return lead + placeholder()

    for pattern in patterns:
        text = pattern.sub(_replace, text)
    return text


def _redact_password(match: re.Match[str]) -> str:
    key_quote, value_quote = match.group(1), match.group(2)
    return f"{key_quote}password{key_quote}: {value_quote}[REDACTED_PASSWORD]{value_quote}"


def _redact_url_params(url: str, state: _SanitizationState) -> str:
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.query:
        return url

    replacements: dict[str, str] = {}
    pairs = parts.query.split("&")
    for index, pair in enumerate(pairs):
        name, sep, _value = pair.partition("=")
        normalized = unquote_plus(name).lower()
        if not sep or normalized not in SENSITIVE_URL_PARAMS:
            continue
        if normalized not in replacements:
            # Brackets would not survive URL encoding, so the bare form is used.
            replacements[normalized] = state.next_credential()[1:-1]
        pairs[index] = f"{name}={replacements[normalized]}"

    if not replacements:
        return url
    state.metadata.urls_redacted += 1
    base = url.partition("?")[0]
    fragment = f"#{parts.fragment}" if parts.fragment else ""
    return f"{base}?{'&'.join(pairs)}{fragment}"


def _sanitize_with_state(text: str, state: _SanitizationState) -> str:
    result = _apply(text, DATABASE_URL_PATTERNS, state.next_database_url)
    result = _apply(result, CREDENTIAL_PATTERNS, state.next_credential)
    for pattern in PASSWORD_PATTERNS:
        result = pattern.sub(_redact_password, result)
    result = _apply(result, PATH_PATTERNS, state.next_path)
    result = _apply(result, EMAIL_PATTERNS, state.next_email)
    result = _apply(result, IP_PATTERNS, state.next_ip)
    result = _apply(result, ENV_VAR_PATTERNS, state.next_env_var)
    return URL_PATTERN.sub(lambda match: _redact_url_params(match.group(0), state), result)


def sanitize(text: str) -> SanitizationResult:
    """Redact a single string with fresh placeholder numbering."""
    state = _SanitizationState()
    content = _sanitize_with_state(text, state)
    return SanitizationResult(content=content, metadata=state.metadata)


def sanitize_messages(messages: Iterable[Mapping[str, Any]]) -> SanitizeMessagesResult:
    """Redact a conversation, numbering placeholders continuously across messages."""
    state = _SanitizationState()
    sanitized: list[dict[str, Any]] = []
    for message in messages:
        content = str(message.get("content") or "")
        sanitized.append(
            {
                **message,
                "content": _sanitize_with_state(content, state),
                "original_length": len(content),
            }
        )

    counts = state.metadata
    return SanitizeMessagesResult(
        messages=sanitized,
        total_redactions={
            "credentials": counts.credentials_redacted,
            "paths": counts.paths_redacted,
            "emails": counts.emails_redacted,
            "urls": counts.urls_redacted,
            "ips": counts.ips_redacted,
            "env_vars": counts.env_vars_redacted,
            "database_urls": counts.database_urls_redacted,
        },
    )


__all__ = [
    "SanitizationMetadata",
    "SanitizationResult",
    "SanitizeMessagesResult",
    "sanitize",
    "sanitize_messages",
]
