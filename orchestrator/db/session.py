from collections.abc import AsyncGenerator
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from orchestrator.settings import settings

# Seconds a SQLite writer waits for a competing transaction before failing
SQLITE_BUSY_TIMEOUT = 30

def make_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """
    Engine for `url`. Postgres gets pre-ping pooling; SQLite (tests and local
    runs) gets a busy timeout so concurrent lease transactions queue up instead
    of failing, and an in-memory database is pinned to a single connection.
    """
    if make_url(url).get_backend_name() != "sqlite":
        kwargs.setdefault("pool_pre_ping", True)
        return create_async_engine(url, echo=False, **kwargs)

    connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
    connect_args.update(kwargs.pop("connect_args", {}))
    if ":memory:" in url:
        kwargs.setdefault("poolclass", StaticPool)
        return create_async_engine(url, echo=False, connect_args=connect_args, **kwargs)

    file_engine = create_async_engine(url, echo=False, connect_args=connect_args, **kwargs)

    @event.listens_for(file_engine.sync_engine, "connect")
    def _no_driver_begin(dbapi_connection, connection_record):
        # The driver would only BEGIN lazily before DML; we emit our own
        dbapi_connection.isolation_level = None

    @event.listens_for(file_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        # Write lock up front; concurrent writers wait on the busy timeout
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return file_engine

def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Components flush; only routers and the scheduler commit
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

engine = make_engine(settings.SQLALCHEMY_DATABASE_URI)
AsyncSessionLocal = make_session_factory(engine)

class Base(DeclarativeBase):
    pass

async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()

async def create_schema(bind: Optional[AsyncEngine] = None) -> None:
    # Dev bootstrap only; production schema comes from migrations
    from orchestrator.db import models  # noqa: F401  (registers tables)

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
