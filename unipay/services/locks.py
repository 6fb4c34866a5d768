"""
Transaction Lockers - Fail-fast mutual exclusion keyed by trade number.

A locker never waits for the holder: contention is reported to the caller
as "not acquired", and the engine turns that into ConcurrentConflictError.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from unipay.config import Settings
from unipay.db.models import TransactionLock
from unipay.services.protocols import Locker, NoopLocker

logger = get_logger(__name__)


class InMemoryLocker:
    """
    Process-local locker.

    Serializes deliveries handled by one process (one event loop). Use
    DatabaseLocker when several workers share the ledger.
    """

    def __init__(self) -> None:
        self._held: set[str] = set()
        self._guard = asyncio.Lock()

    async def lock(self, trade_no: str) -> bool:
        async with self._guard:
            if trade_no in self._held:
                return False
            self._held.add(trade_no)
            return True

    async def unlock(self, trade_no: str) -> None:
        async with self._guard:
            self._held.discard(trade_no)

    def is_locked(self, trade_no: str) -> bool:
        return trade_no in self._held


class DatabaseLocker:
    """
    Locker backed by the transaction_locks table.

    Acquiring inserts a row keyed by trade number; the primary key
    rejects a second holder. A row older than ``ttl_seconds`` belongs to a
    worker that died mid-reconciliation and is reclaimed.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttl_seconds: int = 300,
    ) -> None:
        self._session_factory = session_factory
        self.ttl = timedelta(seconds=ttl_seconds)

    async def lock(self, trade_no: str) -> bool:
        now = datetime.now(UTC)
        async with self._session_factory() as session:
            stale = await session.execute(
                delete(TransactionLock).where(
                    TransactionLock.trade_no == trade_no,
                    TransactionLock.locked_at < now - self.ttl,
                )
            )
            if stale.rowcount:  # type: ignore[attr-defined]
                logger.warning("stale_transaction_lock_reclaimed", trade_no=trade_no)

            session.add(TransactionLock(trade_no=trade_no, locked_at=now))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("transaction_lock_contended", trade_no=trade_no)
                return False

        return True

    async def unlock(self, trade_no: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(TransactionLock).where(TransactionLock.trade_no == trade_no)
            )
            await session.commit()


def build_locker(settings: Settings) -> Locker:
    """Create the locker selected by ``LOCK_BACKEND``."""
    if settings.lock_backend == "database":
        from unipay.db.session import get_session_factory

        return DatabaseLocker(get_session_factory(), ttl_seconds=settings.lock_ttl_seconds)
    if settings.lock_backend == "noop":
        logger.warning("noop_locker_selected", detail="concurrent deliveries are not serialized")
        return NoopLocker()
    return InMemoryLocker()
