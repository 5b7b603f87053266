"""
SqlMessageStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Driver and connectivity failures are translated into the store error
taxonomy so callers never see SQLAlchemy exceptions.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from core.errors import MessageNotFound, StorageUnavailable, StorageWriteError
from database.models import MessageRow
from database.session import Database
from database.store_base import BaseMessageStore
from models.schemas import Message, new_message_id

logger = structlog.get_logger()


class SqlMessageStore(BaseMessageStore):
    """
    Persistent message store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, database: Database, create_schema: bool = True):
        self.database = database
        self._create_schema = create_schema

    async def connect(self) -> None:
        async with self._translate_errors("connect"):
            if self._create_schema:
                await self.database.init()
            else:
                await self.database.ping()

    async def close(self) -> None:
        await self.database.close()

    async def ping(self) -> bool:
        async with self._translate_errors("ping"):
            await self.database.ping()
        return True

    # ── Message operations ─────────────────────────────────

    async def create(self, email: str, message: str) -> Message:
        row = MessageRow(
            id=new_message_id(),
            email=email,
            message=message,
            created_at=datetime.now(timezone.utc),
            sent=False,
        )
        async with self._session("create") as db:
            db.add(row)
            await db.flush()
        logger.debug("message_row_created", id=row.id)
        return row.to_message()

    async def get_by_id(self, message_id: str) -> Message:
        async with self._session("get_by_id") as db:
            row = await db.get(MessageRow, message_id)
            if row is None:
                raise MessageNotFound(message_id)
            return row.to_message()

    async def mark_delivered(self, message_id: str) -> Message:
        # Matching an already-sent row still counts, so a repeat call is a no-op
        async with self._session("mark_delivered") as db:
            stmt = (
                update(MessageRow)
                .where(MessageRow.id == message_id)
                .values(sent=True)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                raise MessageNotFound(message_id)
            row = await db.get(MessageRow, message_id, populate_existing=True)
            return row.to_message()

    async def list_all(self, newest_first: bool = True) -> list[Message]:
        order = MessageRow.created_at.desc() if newest_first else MessageRow.created_at.asc()
        async with self._session("list_all") as db:
            result = await db.execute(select(MessageRow).order_by(order))
            return [row.to_message() for row in result.scalars()]

    # ── Helpers ────────────────────────────────────────────

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        async with self._translate_errors(operation):
            async with self.database.session() as db:
                yield db

    @asynccontextmanager
    async def _translate_errors(self, operation: str) -> AsyncGenerator[None, None]:
        try:
            yield
        except IntegrityError as e:
            logger.warning("store_write_rejected", operation=operation, error=str(e.orig))
            raise StorageWriteError(str(e.orig)) from e
        except (OperationalError, InterfaceError) as e:
            logger.error("store_unavailable", operation=operation, error=str(e.orig))
            raise StorageUnavailable(str(e.orig)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.error("store_unavailable", operation=operation, error=str(e.orig))
                raise StorageUnavailable(str(e.orig)) from e
            logger.error("store_write_failed", operation=operation, error=str(e.orig))
            raise StorageWriteError(str(e.orig)) from e
        except (OSError, asyncio.TimeoutError) as e:
            logger.error("store_unavailable", operation=operation, error=str(e))
            raise StorageUnavailable(str(e) or type(e).__name__) from e
