"""Pydantic models for RelayGate.

This module defines the records exchanged between the routes and the
collaborator subsystems:
- User tokens for the ``user_token`` gatekeeper
- Prompt log entries
- Key pool summaries shown to admins
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(UTC)


class User(BaseModel):
    """A proxy user identified by an opaque token.

    Attributes:
        token: Secret token presented as a bearer credential.
        created_at: When the token was issued.
        prompt_count: Number of prompts proxied for this user.
        ip: Client IPs seen for this token, oldest first.
        note: Free-form admin note.
        disabled_at: When the token was revoked, if it was.
        disabled_reason: Why the token was revoked.
    """

    token: str = Field(..., description="Secret user token")
    created_at: datetime = Field(default_factory=_utcnow)
    prompt_count: int = 0
    ip: list[str] = Field(default_factory=list)
    note: str | None = None
    disabled_at: datetime | None = None
    disabled_reason: str | None = None

    @property
    def is_disabled(self) -> bool:
        return self.disabled_at is not None


class CreateUserRequest(BaseModel):
    """Admin payload for issuing a user token."""

    note: str | None = Field(default=None, description="Optional admin note")

    @field_validator("note")
    @classmethod
    def validate_note(cls, value: str | None) -> str | None:
        """Keep notes bounded in length."""
        if value is not None and len(value) > 256:
            raise ValueError("note too long (max 256 characters)")
        return value


class DisableUserRequest(BaseModel):
    """Admin payload for revoking a user token."""

    reason: str | None = None


class PromptLogEntry(BaseModel):
    """A proxied prompt and the upstream completion."""

    timestamp: datetime = Field(default_factory=_utcnow)
    provider: str
    model: str | None = None
    endpoint: str
    prompt: Any
    response: str
    request_id: str | None = None


class KeySummary(BaseModel):
    """Admin view of an upstream key without the secret."""

    provider: str
    hash: str
    disabled: bool
    rate_limited: bool
    last_used: float | None = None
    prompt_count: int = 0
