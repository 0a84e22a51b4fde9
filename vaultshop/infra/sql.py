import os
import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, AsyncContextManager, Callable, Optional
from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession
)
from contextlib import asynccontextmanager

from ..errors import RepositoryUnavailable

Gated = Callable[[], AsyncContextManager[None]]


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE: bounds the number of open transactions per process
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(database_url: str, gate_limit: Optional[int] = None):
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    if gate_limit is None:
        # sqlite has a single writer: serialize transactions through the
        # gate instead of racing for the file lock
        gate_limit = 1 if pool_size is None else pool_size

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, db_gate, gated


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


@asynccontextmanager
async def transaction(db: GatedAsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run the block inside one gated transaction.

    Joins the transaction already open on the session instead of nesting,
    so repository calls compose into a single atomic unit:

        async with transaction(db):
            unit = await allocator.allocate(...)
            await orders.transition_if_status(...)
    """
    if db.session.in_transaction():
        yield db.session
        return

    async with db.gated():
        try:
            async with db.session.begin():
                yield db.session
        except IntegrityError:
            raise
        except DBAPIError as exc:
            raise RepositoryUnavailable(str(exc.orig or exc)) from exc
        except OSError as exc:
            raise RepositoryUnavailable(str(exc)) from exc


class Database:
    def __init__(self, database_url: str,
                 gate_limit: Optional[int] = None) -> None:
        self.url = database_url
        (
            self.engine, self.SessionAsync, self.gate, self.gated
        ) = make_async_engine(database_url, gate_limit)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.SessionAsync() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    async def dispose(self) -> None:
        await self.engine.dispose()
