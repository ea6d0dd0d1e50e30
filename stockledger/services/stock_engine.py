"""
Stock Mutation Engine: the only code path that changes Product.stock_quantity.

Single item:
    idempotency check (when tied to an order)
    -> advisory lock on the product (bounded retry with jitter)
    -> one transaction: read, compute, reject negatives, write product,
       write ledger entry, write audit entry
    -> release lock (always)
    -> remember the outcome under the idempotency key

Batch:
    every product's lock is taken before the transaction opens; one failed
    acquisition aborts the batch. All items share one transaction, so one
    negative result rolls back every item.

No network I/O happens while a lock or transaction is held.
"""

import asyncio
import logging
import random
from typing import Iterable, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockledger.core.enums import AuditAction, StockLogType
from stockledger.core.exceptions import (
    InsufficientStockError,
    LockContentionError,
    PersistenceFailureError,
    ProductNotFoundError,
    StockError,
    ValidationError,
)
from stockledger.database import utcnow
from stockledger.models.product import Product
from stockledger.models.stock_log import StockLog
from stockledger.schemas.stock import BatchResult, LedgerReport, StockDelta, StockStatus, StockUpdateResult
from stockledger.services.activity_logger import ActivityLogger
from stockledger.services.idempotency import IdempotencyService, find_stock_log, stock_key
from stockledger.services.lock_manager import StockLockManager

logger = logging.getLogger(__name__)


class StockMutationEngine:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        lock_manager: StockLockManager,
        idempotency: IdempotencyService,
        audit: ActivityLogger,
        lock_retry_attempts: int = 5,
        lock_retry_base_delay: float = 0.05,
        lock_retry_max_delay: float = 1.0,
        stock_idempotency_ttl: int = 86400,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.idempotency = idempotency
        self.audit = audit
        self.lock_retry_attempts = max(1, lock_retry_attempts)
        self.lock_retry_base_delay = lock_retry_base_delay
        self.lock_retry_max_delay = lock_retry_max_delay
        self.stock_idempotency_ttl = stock_idempotency_ttl

    @classmethod
    def from_settings(cls, settings, session_factory, lock_manager, idempotency, audit) -> "StockMutationEngine":
        return cls(
            session_factory,
            lock_manager,
            idempotency,
            audit,
            lock_retry_attempts=settings.STOCK_LOCK_RETRY_ATTEMPTS,
            lock_retry_base_delay=settings.STOCK_LOCK_RETRY_BASE_DELAY,
            lock_retry_max_delay=settings.STOCK_LOCK_RETRY_MAX_DELAY,
            stock_idempotency_ttl=settings.STOCK_IDEMPOTENCY_TTL,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def apply_delta(
        self,
        product_id: int,
        delta: int,
        reason: str,
        change_type: Union[StockLogType, str],
        actor: Optional[str] = None,
        order_id: Optional[int] = None,
        reference: Optional[str] = None,
        ip_address: str = "system",
    ) -> StockUpdateResult:
        """
        Apply one signed delta to one product.

        change_type is the caller's intent (SALE, RETURN, ENTRY, ...); it is
        never inferred from the sign. When order_id is given the call is
        idempotent on (product_id, order_id, delta) and a replay returns the
        first outcome with duplicate=True.

        Raises ValidationError, LockContentionError, ProductNotFoundError,
        InsufficientStockError or PersistenceFailureError. Every StockError is
        audited as a failed attempt before it propagates.
        """
        item = StockDelta(
            product_id=product_id,
            delta=delta,
            change_type=change_type,
            reason=reason,
            order_id=order_id,
            reference=reference,
        )
        self._validate(item)

        key = None
        if order_id is not None:
            key = stock_key(product_id, order_id, delta)
            check = await self.idempotency.check(key)
            if not check.is_new:
                logger.info(f"Duplicate stock update detected for product {product_id} order {order_id}")
                return self._duplicate_result(item, check.cached_result)

        holder = self.lock_manager.new_holder_token()
        acquired = False
        try:
            try:
                acquired = await self._acquire_lock(product_id, holder)
                if not acquired:
                    raise LockContentionError(product_id)

                async with self.session_factory() as session:
                    async with session.begin():
                        result = await self._apply_in_session(session, item, actor, ip_address)
            except SQLAlchemyError as e:
                logger.error(f"Stock update for product {product_id} failed to commit: {e}", exc_info=True)
                raise PersistenceFailureError(f"Stock update for product {product_id} failed: {e}") from e
        except StockError as e:
            logger.warning(f"Stock update rejected for product {product_id} (delta {delta}): {e}")
            await self.audit.log_failure(
                AuditAction.STOCK_UPDATE_FAILED,
                "PRODUCT",
                product_id,
                e,
                details={"reason": reason, "quantityChange": delta, "orderId": order_id},
                user_id=actor,
                ip_address=ip_address,
            )
            raise
        finally:
            if acquired:
                await self._release_lock(product_id, holder)

        if key is not None and not result.duplicate:
            await self._remember(key, result)

        logger.info(
            f"Stock for product {product_id}: {result.old_stock} -> {result.new_stock} "
            f"({item.change_type.value} {delta:+d})"
        )
        return result

    async def apply_batch(
        self,
        deltas: Iterable[Union[StockDelta, dict]],
        actor: Optional[str] = None,
        order_id: Optional[int] = None,
        ip_address: str = "system",
    ) -> BatchResult:
        """
        Apply several deltas, each to a different product, all-or-nothing.

        A missing product is reported on its own item (not_found=True) and does
        not abort the others. Insufficient stock on any item, or failing to
        lock any product, aborts the whole batch.
        """
        items: List[StockDelta] = []
        for raw in deltas:
            item = raw if isinstance(raw, StockDelta) else StockDelta.model_validate(raw)
            if order_id is not None and item.order_id is None:
                item = item.model_copy(update={"order_id": order_id})
            self._validate(item)
            items.append(item)

        if not items:
            return BatchResult(results=[])

        product_ids = [item.product_id for item in items]
        if len(set(product_ids)) != len(product_ids):
            raise ValidationError("A batch may contain each product only once; aggregate deltas per product first")

        holder = self.lock_manager.new_holder_token(prefix="bulk")
        acquired: List[int] = []
        try:
            try:
                # Sorted acquisition order keeps two overlapping batches from deadlocking
                for product_id in sorted(product_ids):
                    if not await self._acquire_lock(product_id, holder):
                        raise LockContentionError(product_id)
                    acquired.append(product_id)

                async with self.session_factory() as session:
                    async with session.begin():
                        results = []
                        for item in items:
                            try:
                                results.append(await self._apply_in_session(session, item, actor, ip_address))
                            except ProductNotFoundError:
                                logger.warning(f"Batch item skipped: product {item.product_id} not found")
                                results.append(
                                    StockUpdateResult(product_id=item.product_id, delta=item.delta, not_found=True)
                                )
                        await self.audit.log_in_session(
                            session,
                            action=AuditAction.BULK_STOCK_UPDATE,
                            resource="PRODUCT",
                            resource_id=",".join(str(pid) for pid in product_ids),
                            details={
                                "updates": [r.model_dump(mode="json") for r in results],
                                "orderId": order_id,
                            },
                            user_id=actor,
                            ip_address=ip_address,
                        )
            except SQLAlchemyError as e:
                logger.error(f"Bulk stock update failed to commit: {e}", exc_info=True)
                raise PersistenceFailureError(f"Bulk stock update failed: {e}") from e
        except StockError as e:
            logger.warning(f"Bulk stock update rejected: {e}")
            await self.audit.log_failure(
                AuditAction.BULK_STOCK_UPDATE_FAILED,
                "PRODUCT",
                ",".join(str(pid) for pid in product_ids),
                e,
                details={
                    "updates": [item.model_dump(mode="json") for item in items],
                    "orderId": order_id,
                },
                user_id=actor,
                ip_address=ip_address,
            )
            raise
        finally:
            for product_id in reversed(acquired):
                await self._release_lock(product_id, holder)

        for item, result in zip(items, results):
            if item.order_id is not None and result.log_id is not None and not result.duplicate:
                await self._remember(stock_key(item.product_id, item.order_id, item.delta), result)

        return BatchResult(results=results)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_stock_status(self, product_id: int) -> StockStatus:
        async with self.session_factory() as session:
            current = await session.scalar(select(Product.stock_quantity).where(Product.id == product_id))
        if current is None:
            raise ProductNotFoundError(product_id)

        lock = await self.lock_manager.get_lock(product_id)
        is_locked = lock is not None and lock.is_live
        return StockStatus(
            product_id=product_id,
            current_stock=current,
            is_locked=is_locked,
            locked_by=lock.locked_by if is_locked else None,
            locked_until=lock.expires_at if is_locked else None,
        )

    async def get_stock_history(self, product_id: int, limit: int = 50, offset: int = 0) -> List[StockLog]:
        """Ledger entries for a product, newest first."""
        async with self.session_factory() as session:
            exists = await session.scalar(select(Product.id).where(Product.id == product_id))
            if exists is None:
                raise ProductNotFoundError(product_id)
            result = await session.execute(
                select(StockLog)
                .where(StockLog.product_id == product_id)
                .order_by(StockLog.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def verify_ledger(self, product_id: int) -> LedgerReport:
        """
        Replay a product's ledger in commit order.

        Consistent when every entry satisfies new == old + quantity, the first
        entry starts at zero, each later entry starts where the previous one
        ended, and the last entry ends at the product's current stock.
        """
        async with self.session_factory() as session:
            current = await session.scalar(select(Product.stock_quantity).where(Product.id == product_id))
            if current is None:
                raise ProductNotFoundError(product_id)
            result = await session.execute(
                select(StockLog).where(StockLog.product_id == product_id).order_by(StockLog.id)
            )
            entries = list(result.scalars().all())

        previous = None
        first_break = None
        for entry in entries:
            # The ledger replays from zero; opening stock is booked as an ENTRY
            expected_old = 0 if previous is None else previous.new_stock
            chained = entry.old_stock == expected_old
            if entry.new_stock != entry.old_stock + entry.quantity or not chained:
                first_break = entry.id
                break
            previous = entry

        ledger_stock = entries[-1].new_stock if entries else None
        if first_break is None and entries and ledger_stock != current:
            first_break = entries[-1].id

        consistent = first_break is None and (ledger_stock == current if entries else current == 0)
        if not consistent:
            logger.warning(f"Ledger for product {product_id} is inconsistent (first break: {first_break})")

        return LedgerReport(
            product_id=product_id,
            consistent=consistent,
            entries=len(entries),
            ledger_stock=ledger_stock,
            current_stock=current,
            first_break=first_break,
        )

    async def find_low_stock(self, threshold: int) -> List[Product]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Product)
                .where(Product.stock_quantity < threshold)
                .order_by(Product.stock_quantity, Product.id)
            )
            return list(result.scalars().all())

    async def count_ledger_entries(self, product_id: int) -> int:
        async with self.session_factory() as session:
            return await session.scalar(
                select(func.count()).select_from(StockLog).where(StockLog.product_id == product_id)
            )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(item: StockDelta) -> None:
        sign = item.change_type.required_sign
        if item.delta == 0 and item.change_type != StockLogType.ADJUSTMENT:
            raise ValidationError(f"{item.change_type.value} requires a non-zero delta")
        if sign and item.delta * sign < 0:
            direction = "positive" if sign > 0 else "negative"
            raise ValidationError(f"{item.change_type.value} requires a {direction} delta, got {item.delta}")

    async def _apply_in_session(
        self,
        session: AsyncSession,
        item: StockDelta,
        actor: Optional[str],
        ip_address: str,
    ) -> StockUpdateResult:
        """Read-modify-write-log for one product inside an open transaction."""
        if item.order_id is not None:
            # Backstop for two callers that both passed the idempotency check
            existing = await find_stock_log(session, item.product_id, item.order_id, item.delta)
            if existing is not None:
                logger.info(
                    f"Stock delta for product {item.product_id} order {item.order_id} already in ledger "
                    f"(entry {existing.id})"
                )
                return StockUpdateResult(
                    product_id=item.product_id,
                    delta=item.delta,
                    old_stock=existing.old_stock,
                    new_stock=existing.new_stock,
                    log_id=existing.id,
                    duplicate=True,
                )

        product = await session.scalar(
            select(Product).where(Product.id == item.product_id).with_for_update()
        )
        if product is None:
            raise ProductNotFoundError(item.product_id)

        old_stock = product.stock_quantity
        new_stock = old_stock + item.delta
        if new_stock < 0:
            raise InsufficientStockError(item.product_id, old_stock, abs(item.delta))

        product.stock_quantity = new_stock
        entry = StockLog(
            product_id=item.product_id,
            order_id=item.order_id,
            type=item.change_type.value,
            quantity=item.delta,
            old_stock=old_stock,
            new_stock=new_stock,
            reason=item.reason,
            reference=item.reference,
            created_by=actor,
            created_at=utcnow(),
        )
        session.add(entry)
        await self.audit.log_stock_change(
            session,
            product_id=item.product_id,
            old_stock=old_stock,
            new_stock=new_stock,
            reason=item.reason,
            user_id=actor,
            ip_address=ip_address,
            order_id=item.order_id,
        )
        await session.flush()

        return StockUpdateResult(
            product_id=item.product_id,
            delta=item.delta,
            old_stock=old_stock,
            new_stock=new_stock,
            log_id=entry.id,
        )

    async def _acquire_lock(self, product_id: int, holder: str) -> bool:
        """Bounded exponential backoff with jitter. Never waits indefinitely."""
        for attempt in range(self.lock_retry_attempts):
            if await self.lock_manager.acquire(product_id, holder):
                return True
            if attempt < self.lock_retry_attempts - 1:
                delay = min(self.lock_retry_max_delay, self.lock_retry_base_delay * (2 ** attempt))
                await asyncio.sleep(random.uniform(delay / 2, delay))
        logger.warning(
            f"Could not acquire stock lock for product {product_id} after {self.lock_retry_attempts} attempts"
        )
        return False

    async def _release_lock(self, product_id: int, holder: str) -> None:
        try:
            await self.lock_manager.release(product_id, holder)
        except SQLAlchemyError as e:
            # The row expires on its own and the sweep will remove it
            logger.error(f"Failed to release stock lock for product {product_id}: {e}")

    async def _remember(self, key: str, result: StockUpdateResult) -> None:
        try:
            await self.idempotency.mark_processed(key, result.model_dump(mode="json"), self.stock_idempotency_ttl)
        except SQLAlchemyError as e:
            # Committed already; the ledger row itself answers future checks for this key
            logger.warning(f"Could not record idempotency key {key}: {e}")

    @staticmethod
    def _duplicate_result(item: StockDelta, cached: Optional[dict]) -> StockUpdateResult:
        cached = cached or {}
        return StockUpdateResult(
            product_id=item.product_id,
            delta=item.delta,
            old_stock=cached.get("old_stock"),
            new_stock=cached.get("new_stock"),
            log_id=cached.get("log_id"),
            duplicate=True,
        )
