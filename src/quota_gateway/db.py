import logging
import os
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .core.constants import DEFAULT_CACHE_DATABASE_URL, LIB_LOGGER_NAME
from .db_models import Base

lib_logger = logging.getLogger(LIB_LOGGER_NAME)


def _is_sqlite_url(database_url: str) -> bool:
    driver = make_url(database_url).get_backend_name()
    return driver == "sqlite"


def _get_sqlite_busy_timeout_ms() -> int:
    raw = os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")
    try:
        timeout = int(raw)
    except ValueError:
        timeout = 5000
    return max(1000, timeout)


def _ensure_sqlite_directory(database_url: str) -> None:
    database = make_url(database_url).database
    if not database or database == ":memory:":
        return
    Path(database).parent.mkdir(parents=True, exist_ok=True)


def _configure_sqlite_engine(engine: AsyncEngine) -> None:
    busy_timeout_ms = _get_sqlite_busy_timeout_ms()

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.close()


def create_db_engine(database_url: str = DEFAULT_CACHE_DATABASE_URL) -> AsyncEngine:
    connect_args = {}
    if _is_sqlite_url(database_url):
        _ensure_sqlite_directory(database_url)
        connect_args["timeout"] = _get_sqlite_busy_timeout_ms() / 1000

    engine = create_async_engine(database_url, future=True, connect_args=connect_args)
    if _is_sqlite_url(database_url):
        _configure_sqlite_engine(engine)
    return engine


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(
    database_url: str = DEFAULT_CACHE_DATABASE_URL,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = create_db_engine(database_url)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    await create_tables(engine)
    lib_logger.info(f"Cache database ready at {make_url(database_url).render_as_string(hide_password=True)}")
    return engine, session_maker
