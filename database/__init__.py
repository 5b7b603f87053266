"""
Database layer — Message Store backends.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  await store.connect()
  message = await store.create("a@b.com", "hi")
"""
from database.models import Base, MessageRow
from database.session import Database
from database.store_base import BaseMessageStore
from database.store import SqlMessageStore
from database.store_memory import InMemoryMessageStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "MessageRow",
    # Session management
    "Database",
    # Store interface
    "BaseMessageStore",
    # Store backends
    "SqlMessageStore", "InMemoryMessageStore",
    # Factory
    "create_store",
]
