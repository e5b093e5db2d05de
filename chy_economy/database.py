"""
=============================================================================
CHY ECONOMY - Motor y Sesiones de Base de Datos
=============================================================================
PostgreSQL (asyncpg) en producción; SQLite (aiosqlite) en desarrollo y
pruebas.

En SQLite no existe SELECT ... FOR UPDATE, así que cada transacción abre con
BEGIN IMMEDIATE: el escritor toma el lock de la base al inicio y los demás
esperan, igual que esperarían el lock de fila en PostgreSQL.
=============================================================================
"""

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import Settings
from .models import Base

logger = logging.getLogger(__name__)

# Segundos que SQLite espera por el lock antes de fallar con "database is locked"
SQLITE_BUSY_TIMEOUT = 15


def _ensure_sqlite_dir(db_url: str) -> None:
    _, _, raw_path = db_url.partition("///")
    if not raw_path or raw_path.startswith(":memory:"):
        return
    Path(raw_path).parent.mkdir(parents=True, exist_ok=True)


def _install_sqlite_locking(engine: AsyncEngine) -> None:
    """Desactiva el BEGIN implícito del driver y emite BEGIN IMMEDIATE."""

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Crea el motor async con los ajustes del dialecto."""
    if database_url.startswith("sqlite"):
        _ensure_sqlite_dir(database_url)
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )
        _install_sqlite_locking(engine)
        return engine

    return create_async_engine(database_url, echo=echo, pool_size=20, max_overflow=20)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=True,
    )


def engine_from_settings(settings: Settings) -> AsyncEngine:
    return create_engine(settings.DATABASE_URL, echo=settings.DB_ECHO)


async def create_tables(engine: AsyncEngine) -> None:
    """Crea el esquema si no existe (desarrollo / primer arranque)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema ready on %s", engine.url.render_as_string(hide_password=True))
