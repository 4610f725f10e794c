"""
GST Invoice Admin - Database Configuration

Async SQLAlchemy 2.0 engine and session factory.

The e-invoice services take a session factory rather than a session: every
state transition commits in its own short transaction, and no session is
held open across an IRP call.
"""

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from app.config import settings


# Constraint names stay stable across Alembic autogenerate runs
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s"
}


class Base(DeclarativeBase):
    """Declarative base for the invoice, settings and audit log tables."""
    metadata = MetaData(naming_convention=convention)


engine = create_async_engine(
    settings.database_url_async,
    echo=settings.debug,
    pool_pre_ping=True,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_db():
    """
    Create all tables. Development only; deployed databases are migrated
    with Alembic.
    """
    import app.models  # noqa: F401  (registers mappers)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Dispose of pooled connections (application shutdown, end of a Celery task)."""
    await engine.dispose()
