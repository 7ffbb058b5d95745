# notifier/database.py
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def make_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    # URL comes from DATABASE_URL (see notifier.config)
    return create_async_engine(database_url, echo=echo)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory for talking to the DB; one session per unit of work."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def init_models(engine: AsyncEngine) -> None:
    # Importing the models registers the tables on Base.metadata
    from notifier import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
