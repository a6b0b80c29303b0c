import os
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)

# plain scheme -> async driver scheme
ASYNC_DRIVERS = {
    "sqlite://": "sqlite+aiosqlite://",
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
}

SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA synchronous=NORMAL;",
)


def to_async_url(url: str) -> str:
    for plain, driver in ASYNC_DRIVERS.items():
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def _pool_options() -> Dict[str, Any]:
    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", "30")),
    }


def _install_sqlite_pragmas(engine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_async_engine(database_url: str):
    """Returns (engine, session factory, gated).

    `gated()` is an async context manager bounding how many coroutines hold
    a connection at once; stores wrap every session in it.
    """
    url = to_async_url(database_url)
    is_sqlite = url.startswith("sqlite+aiosqlite://")

    options: Dict[str, Any] = {"pool_pre_ping": True}
    if not is_sqlite:
        options.update(_pool_options())

    engine = create_async_engine(url, **options)
    if is_sqlite:
        _install_sqlite_pragmas(engine)

    sessions = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # defaults to the pool size so waiters queue here, not on the pool
    limit = int(os.getenv(
        "DB_GATE_LIMIT", options.get("pool_size", 10)
    ))
    sem = asyncio.Semaphore(max(1, limit))

    @asynccontextmanager
    async def gated():
        async with sem:
            yield

    return engine, sessions, gated
