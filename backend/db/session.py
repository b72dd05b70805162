"""
ShelfGuard Database Session Management

Async SQLAlchemy engine and session factory.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from core.config import get_settings

settings = get_settings()

_pool_kwargs = {}
if not settings.database_url.startswith("sqlite"):
    _pool_kwargs = {"pool_size": 20, "max_overflow": 10}

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
    **_pool_kwargs,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


async def init_models(bind=None) -> None:
    """Create all tables. Used for local runs and by workers when auto_create_tables is set."""
    import db.models  # noqa: F401  (register tables on Base.metadata)

    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
