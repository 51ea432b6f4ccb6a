import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession, async_sessionmaker, create_async_engine,
)

from ..config import (
    DB_GATE_LIMIT, DB_MAX_OVERFLOW, DB_POOL_SIZE, DB_POOL_TIMEOUT,
)

Gated = Callable[[], AsyncContextManager[None]]

# sqlite has a single writer
SQLITE_GATE_LIMIT = 10


@dataclass
class GatedAsyncSession:
    """A session plus the gate every unit of work on it must pass."""
    session: AsyncSession
    gated: Gated


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def _sqlite_pragmas(dbapi_connection, _):
    # items and tickets reference their transaction; FKs must be enforced
    cur = dbapi_connection.cursor()
    cur.execute("PRAGMA journal_mode=WAL;")
    cur.execute("PRAGMA busy_timeout=5000;")
    cur.execute("PRAGMA synchronous=NORMAL;")
    cur.execute("PRAGMA foreign_keys=ON;")
    cur.close()


def make_async_engine(database_url: str,
                      gate_limit: Optional[int] = DB_GATE_LIMIT):
    """
    Engine, session factory, gate semaphore and `gated()` helper for one
    database. sqlite:// and postgresql:// URLs get their async drivers.
    """
    db_url = _normalize_async_url(database_url)
    is_sqlite = db_url.startswith("sqlite+aiosqlite://")

    kw = dict(pool_pre_ping=True)
    if not is_sqlite:
        kw.update(
            pool_size=DB_POOL_SIZE,
            max_overflow=DB_MAX_OVERFLOW,
            pool_timeout=DB_POOL_TIMEOUT,
        )
    engine = create_async_engine(db_url, **kw)

    if is_sqlite:
        event.listen(engine.sync_engine, "connect", _sqlite_pragmas)

    # sessions outlive their units of work; see model.db.select_fresh
    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if gate_limit is None:
        gate_limit = SQLITE_GATE_LIMIT if is_sqlite else DB_POOL_SIZE
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated


def gated_session(SessionAsync: async_sessionmaker,
                  gated: Gated) -> GatedAsyncSession:
    """New session behind `gated`; the caller closes it."""
    return GatedAsyncSession(session=SessionAsync(), gated=gated)


@asynccontextmanager
async def open_gated_session(
    SessionAsync: async_sessionmaker, gated: Gated,
) -> AsyncIterator[GatedAsyncSession]:
    db = gated_session(SessionAsync, gated)
    try:
        yield db
    finally:
        await db.session.close()
