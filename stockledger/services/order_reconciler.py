"""
Order Lifecycle Reconciler

Sole consumer of marketplace order events, and the only place order status
transitions turn into stock mutations:

- first time an order is seen in PROCESSING / SHIPPED / DELIVERED: debit
  every mapped line item, guarded by order:{marketplace}:{order_id}
- transition into CANCELLED / RETURNED for a debited order whose stored
  status is not already terminal: credit back exactly what the ledger shows
  was debited, guarded by order-credit:{marketplace}:{order_id}:{status}

Both effects go through the engine's batch path, one transaction per order,
so an order is either fully debited/credited or not at all. A failure leaves
the idempotency key unset and the stored status unchanged, so the same event
can simply be replayed.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockledger.core.enums import AuditAction, OrderStatus, StockLogType
from stockledger.core.exceptions import StockError
from stockledger.database import utcnow
from stockledger.integrations.events import OrderEvent
from stockledger.models.order import Order, OrderItem
from stockledger.models.stock_log import StockLog
from stockledger.schemas.order import MarketplaceOrder, MarketplaceOrderItem, ReconcileResult
from stockledger.schemas.stock import StockDelta
from stockledger.services.activity_logger import ActivityLogger
from stockledger.services.idempotency import IdempotencyService, order_credit_key, order_key
from stockledger.services.product_service import ProductMappingResolver
from stockledger.services.stock_engine import StockMutationEngine

logger = logging.getLogger(__name__)

RECONCILER_ACTOR = "order-reconciler"


class OrderLifecycleReconciler:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        engine: StockMutationEngine,
        idempotency: IdempotencyService,
        resolver: ProductMappingResolver,
        audit: ActivityLogger,
        order_ttl: int = 86400,
        queue: Optional[asyncio.Queue] = None,
    ):
        self.session_factory = session_factory
        self.engine = engine
        self.idempotency = idempotency
        self.resolver = resolver
        self.audit = audit
        self.order_ttl = order_ttl
        self.queue: asyncio.Queue = queue or asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Queue consumer lifecycle
    # ------------------------------------------------------------------

    async def publish(self, event: OrderEvent) -> None:
        await self.queue.put(event)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="order-reconciler")
            logger.info("Order reconciler started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Order reconciler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        """Consume the event queue until cancelled."""
        while True:
            event = await self.queue.get()
            try:
                await self.handle_event(event)
            except asyncio.CancelledError:
                self.queue.task_done()
                raise
            except Exception:
                # Stock errors are already recorded on the order; this is anything else
                logger.exception(
                    f"Error reconciling {event.marketplace} order {event.order.order_id}"
                )
            self.queue.task_done()

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_event(self, event: OrderEvent) -> ReconcileResult:
        marketplace = event.marketplace
        incoming = event.order
        status = incoming.status

        order, previous_status, unmapped = await self._upsert_order(marketplace, incoming)
        result = ReconcileResult(
            marketplace=marketplace,
            marketplace_order_id=incoming.order_id,
            order_id=order.id,
            status=status,
            unmapped_skus=unmapped,
        )

        if status == OrderStatus.UNKNOWN:
            logger.warning(
                f"{marketplace} order {incoming.order_id} has unmapped status '{incoming.raw_status}', no stock effect"
            )
            return result

        if previous_status.is_terminal_credit and not status.is_terminal_credit:
            # Terminal is final: a stale or out-of-order event only refreshes observed_status
            logger.info(
                f"{marketplace} order {incoming.order_id} already {previous_status.value}, ignoring {status.value}"
            )
            result.duplicate = True
            return result

        if status.is_debit_status:
            if order.stock_debited_at is None:
                await self._debit(order, result)
            else:
                result.duplicate = True
                await self._set_status(order.id, status)
            return result

        if status.is_terminal_credit:
            if previous_status.is_terminal_credit:
                logger.info(
                    f"{marketplace} order {incoming.order_id} already {previous_status.value}, ignoring {status.value}"
                )
                result.duplicate = True
            elif order.stock_debited_at is not None:
                await self._credit(order, status, result)
            else:
                # Never debited, nothing to give back
                await self._set_status(order.id, status)
            return result

        await self._set_status(order.id, status)
        return result

    async def _debit(self, order: Order, result: ReconcileResult) -> None:
        key = order_key(order.marketplace, order.marketplace_order_id)
        deltas = self._aggregate_items(
            order.items,
            sign=-1,
            change_type=StockLogType.SALE,
            reason=f"{order.marketplace} order {order.marketplace_order_id}",
        )

        async def operation():
            batch = await self.engine.apply_batch(deltas, actor=RECONCILER_ACTOR, order_id=order.id)
            await self._mark_order(order.id, status=result.status, stock_debited_at=utcnow())
            details = {
                "marketplaceOrderId": order.marketplace_order_id,
                "items": [{"productId": r.product_id, "quantity": r.delta} for r in batch.results],
                "missingProducts": [r.product_id for r in batch.not_found],
            }
            await self.audit.log_activity(AuditAction.ORDER_DEBITED, "ORDER", order.id, details=details)
            return {"order_id": order.id, "debited": True, **details}

        await self._run_guarded(key, operation, order, result, "debit")
        if result.error is None:
            result.debited = not result.duplicate

    async def _credit(self, order: Order, status: OrderStatus, result: ReconcileResult) -> None:
        key = order_credit_key(order.marketplace, order.marketplace_order_id, status.value)
        change_type = StockLogType.CANCEL if status == OrderStatus.CANCELLED else StockLogType.RETURN

        async def operation():
            debited = await self._debited_quantities(order.id)
            deltas = [
                StockDelta(
                    product_id=product_id,
                    delta=quantity,
                    change_type=change_type,
                    reason=f"{order.marketplace} order {order.marketplace_order_id} {status.value.lower()}",
                )
                for product_id, quantity in debited.items()
            ]
            batch = await self.engine.apply_batch(deltas, actor=RECONCILER_ACTOR, order_id=order.id)
            await self._mark_order(order.id, status=status, stock_credited_at=utcnow())
            details = {
                "marketplaceOrderId": order.marketplace_order_id,
                "status": status.value,
                "items": [{"productId": r.product_id, "quantity": r.delta} for r in batch.results],
            }
            await self.audit.log_activity(AuditAction.ORDER_CREDITED, "ORDER", order.id, details=details)
            return {"order_id": order.id, "credited": True, **details}

        await self._run_guarded(key, operation, order, result, "credit")
        if result.error is None:
            result.credited = not result.duplicate

    async def _run_guarded(self, key: str, operation, order: Order, result: ReconcileResult, label: str) -> None:
        try:
            _, was_new = await self.idempotency.with_idempotency(key, operation, self.order_ttl)
        except StockError as e:
            logger.warning(f"Order {order.id} {label} failed, will retry on next observation: {e}")
            result.error = str(e)
            result.error_code = e.error_code
            await self._mark_order(order.id, last_error=f"{label}: {e}")
            await self.audit.log_failure(
                AuditAction.ORDER_RECONCILE_FAILED,
                "ORDER",
                order.id,
                e,
                details={"marketplaceOrderId": order.marketplace_order_id, "step": label},
                user_id=RECONCILER_ACTOR,
            )
            return
        result.duplicate = not was_new

    # ------------------------------------------------------------------
    # Re-driving
    # ------------------------------------------------------------------

    async def redrive_failed(self, limit: Optional[int] = None) -> Dict:
        """
        Replay the last observed status of every order whose last stock effect failed.
        Safe to run repeatedly: committed effects are no-ops on replay.
        """
        async with self.session_factory() as session:
            stmt = select(Order).where(Order.last_error.is_not(None)).order_by(Order.id)
            if limit:
                stmt = stmt.limit(limit)
            orders = list((await session.execute(stmt)).scalars().all())

        summary = {"total": len(orders), "reconciled": 0, "still_failing": 0, "details": []}
        for order in orders:
            status = OrderStatus(order.observed_status or order.status)
            event = OrderEvent(
                marketplace=order.marketplace,
                source="redrive",
                order=MarketplaceOrder(
                    order_id=order.marketplace_order_id,
                    status=status,
                    raw_status=order.raw_status,
                    order_date=order.order_date,
                    total_amount=order.total_amount,
                    items=[
                        MarketplaceOrderItem(sku=item.sku, quantity=item.quantity, price=item.price)
                        for item in order.items
                    ],
                ),
            )
            result = await self.handle_event(event)
            summary["details"].append(result.model_dump(mode="json"))
            if result.error:
                summary["still_failing"] += 1
            else:
                summary["reconciled"] += 1

        return summary

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _upsert_order(self, marketplace: str, incoming: MarketplaceOrder) -> Tuple[Order, OrderStatus, List[str]]:
        """
        Store the order and its line items on first sight, or refresh what the
        marketplace last reported. Returns the row, the status stored before
        this event, and SKUs that could not be mapped to a product.
        """
        resolved: Dict[str, Optional[int]] = {}
        for item in incoming.items:
            if item.sku not in resolved:
                resolved[item.sku] = await self.resolver.resolve(marketplace, item.sku)

        async with self.session_factory() as session:
            order = await self._get_order(session, marketplace, incoming.order_id)
            if order is None:
                order = Order(
                    marketplace=marketplace,
                    marketplace_order_id=incoming.order_id,
                    status=OrderStatus.PENDING.value,
                    order_date=incoming.order_date,
                    total_amount=incoming.total_amount,
                    items=[
                        OrderItem(
                            sku=item.sku,
                            quantity=item.quantity,
                            price=item.price,
                            product_id=resolved.get(item.sku),
                        )
                        for item in incoming.items
                    ],
                )
                previous_status = None
                session.add(order)
            else:
                previous_status = OrderStatus(order.status)
                if order.stock_debited_at is None:
                    # A mapping may have been added since the order was first stored
                    for item in order.items:
                        if item.product_id is None and resolved.get(item.sku) is not None:
                            item.product_id = resolved[item.sku]

            order.observed_status = incoming.status.value
            order.raw_status = incoming.raw_status
            try:
                await session.commit()
            except IntegrityError:
                # Another consumer stored it first
                await session.rollback()
                order = await self._get_order(session, marketplace, incoming.order_id)
                previous_status = OrderStatus(order.status)

            order = await self._get_order(session, marketplace, incoming.order_id)

        unmapped = [item.sku for item in order.items if item.product_id is None]
        if unmapped:
            logger.warning(f"{marketplace} order {incoming.order_id}: no stock mapping for SKU(s) {unmapped}")

        if previous_status is None:
            previous_status = OrderStatus.PENDING
        return order, previous_status, unmapped

    @staticmethod
    async def _get_order(session, marketplace: str, marketplace_order_id: str) -> Optional[Order]:
        return await session.scalar(
            select(Order)
            .where(
                Order.marketplace == marketplace,
                Order.marketplace_order_id == marketplace_order_id,
            )
            .execution_options(populate_existing=True)
        )

    async def _set_status(self, order_id: int, status: OrderStatus) -> None:
        await self._mark_order(order_id, status=status)

    async def _mark_order(self, order_id: int, **fields) -> None:
        async with self.session_factory() as session:
            order = await session.get(Order, order_id)
            for name, value in fields.items():
                if isinstance(value, OrderStatus):
                    value = value.value
                setattr(order, name, value)
            if "last_error" not in fields:
                order.last_error = None
            await session.commit()

    async def _debited_quantities(self, order_id: int) -> Dict[int, int]:
        """Net quantity debited per product for an order, read from the ledger."""
        async with self.session_factory() as session:
            rows = await session.execute(
                select(StockLog.product_id, func.sum(StockLog.quantity))
                .where(StockLog.order_id == order_id, StockLog.quantity < 0)
                .group_by(StockLog.product_id)
                .order_by(StockLog.product_id)
            )
            return {product_id: -total for product_id, total in rows.all() if total}

    @staticmethod
    def _aggregate_items(items, sign: int, change_type: StockLogType, reason: str) -> List[StockDelta]:
        totals: "OrderedDict[int, int]" = OrderedDict()
        for item in items:
            if item.product_id is None:
                continue
            totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
        return [
            StockDelta(product_id=product_id, delta=sign * quantity, change_type=change_type, reason=reason)
            for product_id, quantity in totals.items()
        ]
