# trademarket/db.py
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings
from .tables import Base

_engine = None
_SessionLocal = None


def make_engine(db_url: str) -> AsyncEngine:
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=False)
    return create_async_engine(db_url, echo=False, pool_size=5, max_overflow=10)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


def _ensure_engine():
    global _engine, _SessionLocal
    if _engine is None:
        db_url = get_settings().supabase_db_url
        if not db_url:
            # defer failure until a DB-using endpoint is called
            raise RuntimeError("SUPABASE_DB_URL is not set")
        _engine = make_engine(db_url)
        _SessionLocal = make_sessionmaker(_engine)


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    _ensure_engine()
    return _SessionLocal


async def init_models(engine: AsyncEngine) -> None:
    """Create missing tables. Production schemas are managed by migrations."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    _ensure_engine()
    async with _SessionLocal() as session:
        yield session
