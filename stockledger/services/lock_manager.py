"""
Per-product advisory locks backed by the stock_locks table.

A lock is a row keyed by product_id. Acquisition is a plain INSERT: the
primary key makes a second live insert fail, which is reported as contention.
Locks are not reentrant and carry an expiry so a crashed holder cannot wedge
a product; the sweep removes rows past expires_at.

The lock only serializes scheduling of mutations. Atomicity comes from the
mutation's database transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockledger.database import utcnow
from stockledger.models.stock_lock import StockLock

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 30


@dataclass
class LockInfo:
    product_id: int
    locked_by: str
    expires_at: datetime

    @property
    def is_live(self) -> bool:
        return self.expires_at > utcnow()


class StockLockManager:

    def __init__(self, session_factory: async_sessionmaker, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self.session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def new_holder_token(prefix: str = "stock") -> str:
        return f"{prefix}-{uuid.uuid4().hex}"

    async def acquire(self, product_id: int, holder: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Try once to take the lock for product_id.

        Returns False when another live holder owns it. An expired row left by
        a dead holder is removed first, so it never blocks acquisition.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        now = utcnow()

        async with self.session_factory() as session:
            try:
                await session.execute(
                    delete(StockLock).where(
                        StockLock.product_id == product_id,
                        StockLock.expires_at <= now,
                    )
                )
                session.add(
                    StockLock(
                        product_id=product_id,
                        locked_by=holder,
                        expires_at=now + timedelta(seconds=ttl),
                        created_at=now,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(f"Stock lock for product {product_id} is held, {holder} refused")
                return False

        logger.debug(f"Stock lock for product {product_id} acquired by {holder} for {ttl}s")
        return True

    async def release(self, product_id: int, holder: str) -> None:
        """Delete the lock row only if it still belongs to holder."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(StockLock).where(
                    StockLock.product_id == product_id,
                    StockLock.locked_by == holder,
                )
            )
            await session.commit()

        if result.rowcount == 0:
            # Swept after expiry, or never taken
            logger.warning(f"Stock lock for product {product_id} was not held by {holder} at release")

    async def sweep_expired(self) -> int:
        """Remove every lock row past its expiry. Returns the number removed."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(StockLock).where(StockLock.expires_at <= utcnow())
            )
            await session.commit()

        count = result.rowcount or 0
        if count > 0:
            logger.info(f"Cleaned up {count} expired stock locks")
        return count

    async def get_lock(self, product_id: int) -> Optional[LockInfo]:
        async with self.session_factory() as session:
            lock = await session.scalar(select(StockLock).where(StockLock.product_id == product_id))
            if lock is None:
                return None
            return LockInfo(product_id=lock.product_id, locked_by=lock.locked_by, expires_at=lock.expires_at)
