"""SQLAlchemy engine, session factory and schema helpers for the order database."""
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()

# Applied to server databases only; SQLite (tests, local runs) keeps its default pool
SERVER_POOL_OPTIONS = {"pool_size": 10, "max_overflow": 20, "pool_pre_ping": True}


class Database:
    """Owns the async engine and hands out sessions that survive commit."""

    def __init__(self, database_url: str, echo: bool = False, **engine_options):
        options = {"echo": echo, **engine_options}
        if not database_url.startswith("sqlite") and "poolclass" not in options:
            options = {**SERVER_POOL_OPTIONS, **options}

        self.engine = create_async_engine(database_url, **options)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Ensured {len(Base.metadata.tables)} tables exist")

    async def drop_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.warning("All order tables dropped")

    async def ping(self) -> bool:
        """True when the database answers a trivial query."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False
        return True

    async def close(self):
        await self.engine.dispose()
        logger.info("Database engine disposed")
