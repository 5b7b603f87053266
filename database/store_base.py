"""
Abstract Message Store — Interface for all storage backends.

Implementations:
  - SqlMessageStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryMessageStore (dict-based, single-process, no persistence)

The store validates nothing itself; callers validate input first.
"""
from __future__ import annotations

from abc import ABC, abstractmethod

from models.schemas import Message


class BaseMessageStore(ABC):
    """Interface that all message store backends must implement."""

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        """Open connections / create schema. Default: nothing to do."""

    async def close(self) -> None:
        """Release connections. Default: nothing to do."""

    @abstractmethod
    async def ping(self) -> bool:
        """Lightweight liveness probe. Raises or returns False when unreachable."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def create(self, email: str, message: str) -> Message:
        """
        Persist a new message with ``sent=False``.

        Raises StorageUnavailable when the backend cannot be reached and
        StorageWriteError on a constraint violation.
        """
        ...

    @abstractmethod
    async def get_by_id(self, message_id: str) -> Message:
        """Point lookup. Raises MessageNotFound or StorageUnavailable."""
        ...

    @abstractmethod
    async def mark_delivered(self, message_id: str) -> Message:
        """
        Set ``sent=True``. Calling it on an already-delivered record is a
        no-op, not an error. Raises MessageNotFound when absent.
        """
        ...

    @abstractmethod
    async def list_all(self, newest_first: bool = True) -> list[Message]:
        ...
