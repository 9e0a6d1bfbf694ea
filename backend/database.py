"""
=============================================================================
TRUEQUE - Motor y Sesiones de Base de Datos (SQLAlchemy async)
=============================================================================
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .app.config import get_settings
from .models import Base


def build_engine(database_url: str = None, echo: bool = None) -> AsyncEngine:
    """Crea el motor async a partir de Settings (o de los valores dados)."""
    settings = get_settings()
    return create_async_engine(
        database_url or settings.database_url,
        echo=settings.sql_echo if echo is None else echo,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False: los registros se leen después del commit
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_db(engine: AsyncEngine):
    """Crea las tablas si no existen."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
