"""Async SQLAlchemy database setup and transactional helpers for the billing service."""

import asyncio
import logging
import weakref
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.orm.exc import StaleDataError

from korpo_billing.config import settings
from korpo_billing.errors import ConcurrentModification

logger = logging.getLogger(__name__)

engine = create_async_engine(settings.database_url, echo=settings.debug)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory services open transactions from."""
    return async_session


async def init_db():
    """Create all tables. Call once at startup."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class KeyedLocks:
    """In-process asyncio locks keyed by document id, e.g. ("usage", user_id, month).

    Serializes read-check-write sequences for one key inside this process. Writes
    from other processes are caught by the row version check in run_in_transaction.
    Locks are dropped once no coroutine references them.
    """

    def __init__(self):
        self._locks: weakref.WeakValueDictionary[tuple, asyncio.Lock] = weakref.WeakValueDictionary()

    def __call__(self, *key) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock


async def run_in_transaction(
    session_factory: async_sessionmaker[AsyncSession],
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    retries: int = 3,
    label: str = "document",
) -> T:
    """Run ``work`` in its own transaction, retrying on optimistic-concurrency conflicts.

    A conflict is a stale row version (another writer committed first) or a
    duplicate insert of a lazily created row. Any other exception rolls back
    and propagates unchanged.
    """
    for attempt in range(1, retries + 1):
        async with session_factory() as session:
            try:
                async with session.begin():
                    return await work(session)
            except (StaleDataError, IntegrityError) as e:
                logger.warning(
                    "Write conflict on %s (attempt %d/%d): %s", label, attempt, retries, e
                )
    raise ConcurrentModification(f"Could not update {label} after {retries} attempts")
