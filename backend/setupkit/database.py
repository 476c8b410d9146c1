"""Database engines, session factories, and base classes.

Two separate DeclarativeBase classes:
  - StateBase     → tables in the local state database owned by this
                    service (bootstrap config, wizard steps)
  - PlatformBase  → tables of the target application database; the schema
                    is owned by the alembic project and applied by the
                    schema provisioner

Session dependency for FastAPI:
  - get_db()  → local state database
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase

from setupkit.config import settings

engine = create_async_engine(
    settings.state_database_url,
    echo=False,
)

async_session = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)


# ── Base classes ────────────────────────────────────────────

class StateBase(DeclarativeBase):
    """Models that live in the local state database."""
    pass


class PlatformBase(DeclarativeBase):
    """Models of the target application database."""
    pass


# ── Session dependencies ────────────────────────────────────

async def get_db() -> AsyncSession:
    """Yield a session on the local state database."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_state_tables() -> None:
    """Create the state tables if missing. Called once at startup."""
    import setupkit.models.state  # noqa: F401  (register tables)

    async with engine.begin() as conn:
        await conn.run_sync(StateBase.metadata.create_all)
