"""Async SQLAlchemy database setup for the billing core."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from billing_core.config import settings
from billing_core.errors import ConfigurationError

engine = create_async_engine(settings.database_url, echo=settings.debug)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db():
    """Dependency that yields an async database session."""
    async with async_session() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def insert_ignoring_conflicts(session: AsyncSession, model, conflict_column: str, **values):
    """Build INSERT ... ON CONFLICT DO NOTHING for the session's dialect.

    A single statement, so two concurrent inserts of the same key cannot both
    succeed; the loser sees rowcount == 0.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model)
    else:
        raise ConfigurationError(f"Unsupported database dialect: {dialect}")
    return stmt.values(**values).on_conflict_do_nothing(index_elements=[conflict_column])


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency for work that outlives the request (background reporting)."""
    return async_session


async def init_db():
    """Create all tables. Call once at startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
