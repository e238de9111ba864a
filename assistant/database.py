from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DATABASE_URL

Base = declarative_base()


def build_engine(url: str = DATABASE_URL) -> AsyncEngine:
    """Create an async engine ('postgresql+asyncpg' in production)."""
    return create_async_engine(url, echo=False, future=True)


def build_session_factory(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


# Dependency for Routes
async def get_db() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionLocal() as session:
        yield session


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables. Run once on startup."""
    from . import models  # noqa: F401  (registers the tables on Base)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
