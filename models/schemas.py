"""
Core data models for the message relay.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field


MAX_MESSAGE_LENGTH = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Message — the unit of work
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """
    A stored message and its delivery flag.

    ``sent`` only ever moves from False to True; the Message Store is the
    sole owner of the canonical record.
    """
    id: str = Field(default_factory=new_message_id)
    email: str
    message: str
    created_at: datetime = Field(default_factory=_utcnow)
    sent: bool = False

    def to_public(self) -> dict[str, Any]:
        """Record layout returned by the read API."""
        return {
            "id": self.id,
            "email": self.email,
            "message": self.message,
            "createdAt": self.created_at.isoformat(),
            "sent": self.sent,
        }

    def to_receipt(self) -> dict[str, Any]:
        """Body returned when a submission is accepted."""
        return {"id": self.id, "email": self.email, "message": self.message}


# ──────────────────────────────────────────────────────────────
#  Submission — validated client input
# ──────────────────────────────────────────────────────────────

class MessageSubmission(BaseModel):
    """Inbound payload for POST /messages. Unknown fields are dropped."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=False)

    email: EmailStr
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)


class HealthReport(BaseModel):
    store: bool = False
    queue: bool = False

    def to_public(self) -> dict[str, str]:
        return {
            "store": "up" if self.store else "down",
            "queue": "up" if self.queue else "down",
        }
