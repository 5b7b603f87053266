"""
InMemoryMessageStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database server)
  - Full interface compatibility with SqlMessageStore
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart
"""
from __future__ import annotations

import itertools
import structlog

from core.errors import MessageNotFound, StorageWriteError
from database.store_base import BaseMessageStore
from models.schemas import Message

logger = structlog.get_logger()


class InMemoryMessageStore(BaseMessageStore):
    """Same contract as SqlMessageStore, kept in process memory."""

    def __init__(self):
        self._messages: dict[str, Message] = {}
        self._order: dict[str, int] = {}        # id → insertion sequence
        self._seq = itertools.count()
        self._connected = False
        logger.info("inmemory_store_initialized")

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def ping(self) -> bool:
        return self._connected

    async def create(self, email: str, message: str) -> Message:
        record = Message(email=email, message=message)
        if record.id in self._messages:
            raise StorageWriteError(f"Duplicate message id {record.id}")
        self._messages[record.id] = record
        self._order[record.id] = next(self._seq)
        return record.model_copy()

    async def get_by_id(self, message_id: str) -> Message:
        record = self._messages.get(message_id)
        if record is None:
            raise MessageNotFound(message_id)
        return record.model_copy()

    async def mark_delivered(self, message_id: str) -> Message:
        record = self._messages.get(message_id)
        if record is None:
            raise MessageNotFound(message_id)
        if not record.sent:
            record.sent = True
        return record.model_copy()

    async def list_all(self, newest_first: bool = True) -> list[Message]:
        records = sorted(
            self._messages.values(),
            key=lambda m: (m.created_at, self._order[m.id]),
            reverse=newest_first,
        )
        return [m.model_copy() for m in records]
