#!/usr/bin/env python3
"""
Database Migration — Create the message tables from SQLAlchemy models.

Usage:
    # Local:
    python scripts/migrate_db.py

    # Check status only (no changes):
    python scripts/migrate_db.py --check

The target is database.url from the loaded settings (or DATABASE_URL).
"""
import asyncio
import os
import sys
import argparse

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


async def existing_tables(database) -> list[str]:
    from sqlalchemy import inspect

    async with database.engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())


async def run_migration(check_only: bool = False) -> int:
    from config.settings import load_settings
    settings = load_settings()

    from database.session import Database
    from database.models import Base

    database = Database(settings.database.url, connect_timeout=settings.database.connect_timeout)
    defined = set(Base.metadata.tables.keys())
    try:
        if check_only:
            print(f"Database: {database.engine.dialect.name}")
            print(f"URL: {database.url.split('@')[-1]}")
            print(f"Tables defined: {', '.join(sorted(defined))}")

            existing = await existing_tables(database)
            print(f"Tables existing: {', '.join(existing) or '(none)'}")

            missing = defined - set(existing)
            if missing:
                print(f"Tables MISSING: {', '.join(sorted(missing))}")
                print("Run without --check to create them.")
                return 1
            print("All tables exist.")
            return 0

        print("Running database migration...")
        await database.init()

        tables = [t for t in await existing_tables(database) if t in defined]
        print(f"Tables created/verified: {', '.join(tables)}")
        print("Migration complete.")
        return 0
    finally:
        await database.close()


def main():
    parser = argparse.ArgumentParser(description="Database migration")
    parser.add_argument("--check", action="store_true", help="Check status only")
    args = parser.parse_args()

    sys.exit(asyncio.run(run_migration(check_only=args.check)))


if __name__ == "__main__":
    main()
