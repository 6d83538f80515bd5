"""Redaction of credentials, client IPs and prompt content before logging."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

CENSOR = "********"

SENSITIVE_REQUEST_HEADERS = frozenset(
    {
        "cookie",
        "authorization",
        "x-api-key",
        "x-forwarded-for",
        "x-real-ip",
        "true-client-ip",
        "cf-connecting-ip",
    }
)
SENSITIVE_RESPONSE_HEADERS = frozenset({"set-cookie"})
# Prompt text must never reach the logs, not even on transform errors.
SENSITIVE_BODY_FIELDS = frozenset({"messages", "prompt"})

_HEADER_KEYS = {
    "headers": SENSITIVE_REQUEST_HEADERS,
    "request_headers": SENSITIVE_REQUEST_HEADERS,
    "response_headers": SENSITIVE_RESPONSE_HEADERS,
}
_BODY_KEYS = ("body", "request_body")


def _header_items(
    headers: Mapping[str, str] | Iterable[tuple[str, str]] | Iterable[tuple[bytes, bytes]],
) -> Iterable[tuple[str, str]]:
    items = headers.items() if isinstance(headers, Mapping) else headers
    for key, value in items:
        if isinstance(key, bytes):
            key = key.decode("latin-1")
        if isinstance(value, bytes):
            value = value.decode("latin-1")
        yield str(key), str(value)


def redact_headers(
    headers: Mapping[str, str] | Iterable[tuple[str, str]] | Iterable[tuple[bytes, bytes]],
    *,
    sensitive: frozenset[str] = SENSITIVE_REQUEST_HEADERS,
) -> dict[str, str]:
    """Return a lowercase header dict with sensitive values censored."""
    redacted: dict[str, str] = {}
    for key, value in _header_items(headers):
        name = key.lower()
        redacted[name] = CENSOR if name in sensitive else value
    return redacted


def redact_body(body: Any) -> Any:
    """Censor top-level prompt fields of a parsed request body."""
    if not isinstance(body, Mapping):
        return body
    return {
        str(key): CENSOR if key in SENSITIVE_BODY_FIELDS else value
        for key, value in body.items()
    }


def redact_event(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor applying header and body redaction to known keys."""
    for key, sensitive in _HEADER_KEYS.items():
        value = event_dict.get(key)
        if isinstance(value, (Mapping, list)):
            event_dict[key] = redact_headers(value, sensitive=sensitive)
    for key in _BODY_KEYS:
        if key in event_dict:
            event_dict[key] = redact_body(event_dict[key])
    return event_dict
