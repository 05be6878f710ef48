"""Initialize the database schema for the SQL document store.

Creates the ``documents`` table. Run this before starting the API server
with ``STORE_BACKEND=sql``. Pass ``--drop`` to recreate it from scratch.
"""

import asyncio
import logging
import sys

from recon.config import settings
from recon.db import get_engine
from recon.logging_config import setup_logging
from recon.models import Base

logger = logging.getLogger("init_db")


async def init_database(drop: bool = False):
    """Create all database tables."""
    print(f"Initializing database: {settings.db.url}")

    engine = get_engine()
    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
            print("✓ Dropped existing tables")

        await conn.run_sync(Base.metadata.create_all)
        print("✓ Created all tables")
    await engine.dispose()

    print("\n✅ Database initialization complete!")
    print(f"Tables created: {', '.join(Base.metadata.tables.keys())}")


async def main():
    """Main entry point."""
    setup_logging()
    try:
        await init_database(drop="--drop" in sys.argv[1:])
    except Exception as e:
        logger.exception(f"Error initializing database: {e}")
        print(f"\n❌ Error initializing database: {e}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
