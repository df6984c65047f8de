"""
SQLAlchemy async engine, declarative base and session helpers.
"""

import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from loguru import logger
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def generate_uuid() -> str:
    return str(uuid.uuid4())


class Database:
    """
    Owns the async engine and session factory for the process.
    Repositories receive the session factory, never the engine.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        _ensure_sqlite_dir(url)
        kwargs = {}
        if url.startswith("sqlite") and ":memory:" in url:
            # A single shared connection keeps the in-memory database alive.
            kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        self.engine: AsyncEngine = create_async_engine(url, echo=echo, **kwargs)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self):
        # Import models so they register on Base.metadata.
        import sso.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database schema ready at {make_url(self.url).render_as_string()}")

    async def ping(self) -> bool:
        """Check the database is reachable."""
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning(f"Database ping failed: {exc}")
            return False

    async def dispose(self):
        await self.engine.dispose()


@asynccontextmanager
async def get_session(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """Session context that rolls back on error."""
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def _ensure_sqlite_dir(url: str):
    parsed = make_url(url)
    if not parsed.drivername.startswith("sqlite") or not parsed.database:
        return
    if parsed.database == ":memory:":
        return
    Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
