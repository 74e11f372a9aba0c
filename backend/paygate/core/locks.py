"""Per-transaction processing lock built on a single conditional insert."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator

from sqlalchemy import delete, insert, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.core.errors import StoreUnavailableError
from paygate.models.processing_lock import ProcessingLock

logger = logging.getLogger(__name__)


class TransactionLock:
    """
    Mutual exclusion keyed by transaction id.

    Acquisition is one INSERT into ``processing_locks``; the primary key
    makes the database reject a second holder. There is never an
    application-level existence check before the write.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], stale_after_seconds: int = 300):
        self._session_factory = session_factory
        self._stale_after = timedelta(seconds=stale_after_seconds)

    async def acquire(self, transaction_id: str) -> bool:
        """
        Try to take the lock without waiting.

        Returns False if another holder has it. Raises StoreUnavailableError
        if the store cannot be reached; no lock is taken in that case.
        """
        now = datetime.utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if self._stale_after.total_seconds() > 0:
                        reclaimed = await session.execute(
                            delete(ProcessingLock).where(
                                ProcessingLock.transaction_id == transaction_id,
                                ProcessingLock.locked_at < now - self._stale_after
                            )
                        )
                        if reclaimed.rowcount:
                            logger.warning(f"Reclaimed stale processing lock for {transaction_id}")

                    await session.execute(
                        insert(ProcessingLock).values(transaction_id=transaction_id, locked_at=now)
                    )
        except sa_exc.IntegrityError:
            logger.debug(f"Processing lock for {transaction_id} already held")
            return False
        except (sa_exc.SQLAlchemyError, OSError) as e:
            logger.error(f"Lock store unavailable acquiring {transaction_id}: {e}")
            raise StoreUnavailableError("Lock store unavailable") from e

        logger.debug(f"Acquired processing lock for {transaction_id}")
        return True

    async def release(self, transaction_id: str) -> None:
        """Remove the lock. Releasing a lock that does not exist is fine."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(ProcessingLock).where(ProcessingLock.transaction_id == transaction_id)
                    )
        except (sa_exc.SQLAlchemyError, OSError) as e:
            logger.error(f"Lock store unavailable releasing {transaction_id}: {e}")
            raise StoreUnavailableError("Lock store unavailable") from e

        logger.debug(f"Released processing lock for {transaction_id}")

    async def is_held(self, transaction_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ProcessingLock.transaction_id).where(ProcessingLock.transaction_id == transaction_id)
            )
            return result.scalar_one_or_none() is not None

    @asynccontextmanager
    async def hold(self, transaction_id: str) -> AsyncIterator[bool]:
        """
        Scope a settlement attempt to the lock.

        Yields whether the lock was acquired; releases it on exit even when
        the body raises. A failed release leaves the row for stale reclaim.
        """
        acquired = await self.acquire(transaction_id)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.release(transaction_id)
                except StoreUnavailableError:
                    logger.error(
                        f"Processing lock for {transaction_id} left in place; "
                        f"it will be reclaimed after {self._stale_after}",
                        exc_info=True
                    )
