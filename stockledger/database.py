# stockledger/database.py

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from stockledger.core.config import get_settings

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_database_url(database_url: str) -> str:
    # Convert postgresql:// to postgresql+asyncpg:// for async support
    if database_url.startswith('postgresql://'):
        database_url = database_url.replace('postgresql://', 'postgresql+asyncpg://', 1)
    return database_url


def _enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """
    Make every SQLite transaction take the write lock up front.

    pysqlite's deferred BEGIN lets two connections both read and then fail on
    lock upgrade; BEGIN IMMEDIATE makes them queue on the busy timeout instead.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    database_url = normalize_database_url(database_url)
    if not database_url:
        raise ValueError("DATABASE_URL is not set in environment variables")

    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30},
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_recycle=1800,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()

engine = build_engine(settings.DATABASE_URL)
async_session = build_session_factory(engine)


@asynccontextmanager
async def get_session() -> AsyncSession:
    session = async_session()
    try:
        yield session
    finally:
        await session.close()
