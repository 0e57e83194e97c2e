from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from chainattend.config import settings

db_url = settings.effective_database_url

engine = create_async_engine(db_url, echo=settings.SQL_ECHO)

AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind=engine):
    """Create all tables (no migrations; schema changes are out of scope)."""
    from chainattend import models  # noqa: F401  registers every table on Base

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
