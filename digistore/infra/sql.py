"""
Async engine construction shared by the app and the tests.

`make_async_engine` returns the engine, a session factory and `gated`, a
zero-arg callable producing an async context manager that bounds how many
coroutines hold a DB connection at once. Stores take `gated` in their
constructor and wrap every transaction in it.
"""
import os
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
    # deliveries cascade with their order, products SET NULL on orders
    "PRAGMA foreign_keys=ON;",
)


def normalize_async_url(url: str) -> str:
    for sync_prefix, async_prefix in (
        ("sqlite://", "sqlite+aiosqlite://"),
        ("postgresql://", "postgresql+asyncpg://"),
        ("postgres://", "postgresql+asyncpg://"),
    ):
        if url.startswith(sync_prefix):
            return async_prefix + url[len(sync_prefix):]
    return url


def _engine_options(db_url: str) -> Tuple[Dict[str, Any], Optional[int]]:
    kw: Dict[str, Any] = dict(future=True, pool_pre_ping=True)
    if not db_url.startswith("postgresql+asyncpg://"):
        return kw, None
    pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
    kw.update(
        pool_size=pool_size,
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
    )
    return kw, pool_size


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


# DB-GATE: bound concurrent DB work to what the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str):
    db_url = normalize_async_url(database_url)
    kw, pool_size = _engine_options(db_url)

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # sqlite has no pool size to follow
    default_limit = "10" if pool_size is None else str(pool_size)
    db_gate = asyncio.Semaphore(
        max(1, int(os.getenv("DB_GATE_LIMIT", default_limit)))
    )

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated


async def create_schema(engine: AsyncEngine, metadata: MetaData) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
