from logging import getLogger
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = getLogger(__name__)


# Base class for declarative models
class Base(DeclarativeBase):
    pass


class Database:
    """
    Async engine plus session factory.

    Constructed explicitly (normally in the application lifespan) and passed
    to whatever needs it; ``close`` disposes the connection pool.
    """

    def __init__(self, url: str, echo: bool = False, pool_size: int | None = None):
        engine_kwargs: dict = {"echo": echo}
        if pool_size and not url.startswith("sqlite"):
            engine_kwargs["pool_size"] = pool_size
            engine_kwargs["pool_pre_ping"] = True

        self.url = url
        self.engine = create_async_engine(url, **engine_kwargs)
        self.sessionmaker = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    def session(self) -> AsyncSession:
        return self.sessionmaker()

    async def init(self) -> None:
        """Create tables that do not exist yet."""
        # register models on Base.metadata
        from database.models import action_items, analyses, submissions  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning(f"Database ping failed: {exc}")
            return False

    async def close(self) -> None:
        """Close database engine and connections."""
        await self.engine.dispose()


async def get_session(database: Database) -> AsyncIterator[AsyncSession]:
    async with database.session() as session:
        yield session
