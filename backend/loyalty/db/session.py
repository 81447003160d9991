from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from loyalty.core.config import settings


def build_engine(url: str, pool_size: int = 20) -> AsyncEngine:
    kwargs = {"future": True, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = pool_size
    return create_async_engine(url, **kwargs)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.DATABASE_URL, settings.DATABASE_POOL_SIZE)
async_session_maker = build_session_maker(engine)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with async_session_maker() as session:
        yield session
