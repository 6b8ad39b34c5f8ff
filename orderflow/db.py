"""
Database plumbing.

Every service owns its own database (database per service); this module only
builds the engine and the session factory the way each service needs them.
"""

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def create_session_factory(database_url: str) -> tuple[AsyncEngine, sessionmaker]:
    engine = create_async_engine(database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine, async_session


async def init_db(engine: AsyncEngine, metadata: MetaData) -> None:
    """Create the service's tables if they do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
