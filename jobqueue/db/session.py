from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from jobqueue.domain.errors import StoreUnavailable

class Base(DeclarativeBase):
    pass

def create_store_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": 30},
        )
        _use_immediate_transactions(engine)
        return engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
    )

def _use_immediate_transactions(engine: AsyncEngine) -> None:
    # SQLite upgrades a deferred read lock to a write lock without consulting
    # the busy timeout, so racing dispatchers would fail with "database is
    # locked". Taking the write lock up front makes them queue instead.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

@asynccontextmanager
async def store_session(sessionmaker: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """
    One transaction against the store. Commits on success, rolls back on error.
    Connection-level failures surface as StoreUnavailable.
    """
    try:
        async with sessionmaker() as session:
            async with session.begin():
                yield session
    except (OperationalError, InterfaceError, OSError) as e:
        raise StoreUnavailable(e) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise StoreUnavailable(e) from e
        raise

async def create_schema(engine: AsyncEngine) -> None:
    # Import registers the tables on Base.metadata
    from jobqueue.db import models  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except (OperationalError, InterfaceError, OSError) as e:
        raise StoreUnavailable(e) from e
