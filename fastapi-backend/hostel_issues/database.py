from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool, StaticPool


def normalize_database_url(url: str) -> str:
    # Ensure we use the async drivers
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("postgresql+psycopg2://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite:///") or url == "sqlite://":
        return url.replace("sqlite:", "sqlite+aiosqlite:", 1)
    return url


def make_engine(database_url: str) -> AsyncEngine:
    database_url = normalize_database_url(database_url)
    engine_kwargs = {"echo": False, "future": True}
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or "mode=memory" in database_url or database_url == "sqlite+aiosqlite://":
            # In-memory DBs need one shared connection or every session sees an empty database
            engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["poolclass"] = NullPool
    elif "asyncpg" in database_url:
        engine_kwargs["poolclass"] = NullPool
    return create_async_engine(database_url, **engine_kwargs)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
