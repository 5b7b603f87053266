"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - String primary keys (uuid hex) — no database-specific sequences.
  - Timezone-aware timestamps so ordering is stable across dialects.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import String, Text, Boolean, DateTime, Index, false
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import Message, new_message_id


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Messages
# ──────────────────────────────────────────────────────────────

class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_message_id)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    sent: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false(), nullable=False)

    __table_args__ = (
        Index("ix_messages_created_at", "created_at"),
    )

    def to_message(self) -> Message:
        created_at = self.created_at
        # SQLite hands back naive datetimes even for timezone=True columns
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return Message(
            id=self.id,
            email=self.email,
            message=self.message,
            created_at=created_at,
            sent=bool(self.sent),
        )
