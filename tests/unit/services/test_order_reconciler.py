# tests/unit/services/test_order_reconciler.py
import asyncio

import pytest
from sqlalchemy import select

from stockledger.core.enums import AuditAction, OrderStatus, StockLogType
from stockledger.integrations.events import OrderEvent
from stockledger.models.activity_log import ActivityLog
from stockledger.models.order import Order
from stockledger.models.product import Product
from stockledger.schemas.order import MarketplaceOrder, MarketplaceOrderItem

MARKETPLACE = "trendyol"


def _event(order_id, status, items, raw_status=None):
    return OrderEvent(
        marketplace=MARKETPLACE,
        order=MarketplaceOrder(
            order_id=order_id,
            status=status,
            raw_status=raw_status or status.value,
            items=[MarketplaceOrderItem(sku=sku, quantity=quantity) for sku, quantity in items],
        ),
    )


async def _stock(session_factory, product_id):
    async with session_factory() as session:
        return await session.scalar(select(Product.stock_quantity).where(Product.id == product_id))


async def _order(session_factory, marketplace_order_id):
    async with session_factory() as session:
        return await session.scalar(
            select(Order).where(Order.marketplace == MARKETPLACE, Order.marketplace_order_id == marketplace_order_id)
        )


@pytest.fixture
async def guitar(make_product, map_sku):
    product = await make_product(stock=10)
    await map_sku(MARKETPLACE, "TY-GTR", product.id)
    return product


@pytest.mark.asyncio
async def test_processing_order_debits_stock(reconciler, guitar, session_factory):
    result = await reconciler.handle_event(_event("1001", OrderStatus.PROCESSING, [("TY-GTR", 3)]))

    assert result.debited is True
    assert result.error is None
    assert await _stock(session_factory, guitar.id) == 7

    order = await _order(session_factory, "1001")
    assert order.status == OrderStatus.PROCESSING.value
    assert order.stock_debited_at is not None
    assert order.items[0].product_id == guitar.id

    async with session_factory() as session:
        audit = await session.scalar(select(ActivityLog).where(ActivityLog.action == AuditAction.ORDER_DEBITED.value))
    assert audit.resource_id == str(order.id)


@pytest.mark.asyncio
async def test_replayed_order_is_debited_once(reconciler, guitar, session_factory, stock_engine):
    event = _event("1002", OrderStatus.PROCESSING, [("TY-GTR", 2)])

    results = [await reconciler.handle_event(event) for _ in range(5)]

    assert [r.debited for r in results] == [True, False, False, False, False]
    assert all(r.duplicate for r in results[1:])
    assert await _stock(session_factory, guitar.id) == 8
    # Opening entry plus one SALE
    assert await stock_engine.count_ledger_entries(guitar.id) == 2


@pytest.mark.asyncio
async def test_pending_order_is_stored_and_debited_when_it_advances(reconciler, guitar, session_factory):
    pending = await reconciler.handle_event(_event("1003", OrderStatus.PENDING, [("TY-GTR", 1)], raw_status="Created"))

    assert pending.debited is False
    assert await _stock(session_factory, guitar.id) == 10
    assert (await _order(session_factory, "1003")).raw_status == "Created"

    picked = await reconciler.handle_event(_event("1003", OrderStatus.PROCESSING, [("TY-GTR", 1)], raw_status="Picking"))

    assert picked.debited is True
    assert await _stock(session_factory, guitar.id) == 9


@pytest.mark.asyncio
async def test_cancellation_restores_stock_once(reconciler, guitar, session_factory, stock_engine):
    await reconciler.handle_event(_event("1004", OrderStatus.SHIPPED, [("TY-GTR", 4)]))
    assert await _stock(session_factory, guitar.id) == 6

    cancelled = await reconciler.handle_event(_event("1004", OrderStatus.CANCELLED, [("TY-GTR", 4)]))
    replay = await reconciler.handle_event(_event("1004", OrderStatus.CANCELLED, [("TY-GTR", 4)]))

    assert cancelled.credited is True
    assert replay.credited is False
    assert replay.duplicate is True
    assert await _stock(session_factory, guitar.id) == 10

    order = await _order(session_factory, "1004")
    assert order.status == OrderStatus.CANCELLED.value
    assert order.stock_credited_at is not None

    history = await stock_engine.get_stock_history(guitar.id)
    assert [entry.type for entry in history[:2]] == [StockLogType.CANCEL.value, StockLogType.SALE.value]
    assert history[0].quantity == 4
    assert (await stock_engine.verify_ledger(guitar.id)).consistent is True


@pytest.mark.asyncio
async def test_return_credits_with_return_entries(reconciler, guitar, session_factory, stock_engine):
    await reconciler.handle_event(_event("1005", OrderStatus.DELIVERED, [("TY-GTR", 2)]))

    result = await reconciler.handle_event(_event("1005", OrderStatus.RETURNED, [("TY-GTR", 2)]))

    assert result.credited is True
    assert await _stock(session_factory, guitar.id) == 10
    assert (await stock_engine.get_stock_history(guitar.id))[0].type == StockLogType.RETURN.value


@pytest.mark.asyncio
async def test_second_terminal_status_does_not_credit_again(reconciler, guitar, session_factory):
    await reconciler.handle_event(_event("1006", OrderStatus.PROCESSING, [("TY-GTR", 2)]))
    await reconciler.handle_event(_event("1006", OrderStatus.CANCELLED, [("TY-GTR", 2)]))

    result = await reconciler.handle_event(_event("1006", OrderStatus.RETURNED, [("TY-GTR", 2)]))

    assert result.credited is False
    assert await _stock(session_factory, guitar.id) == 10
    assert (await _order(session_factory, "1006")).status == OrderStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_order_first_seen_cancelled_has_no_stock_effect(reconciler, guitar, session_factory):
    result = await reconciler.handle_event(_event("1007", OrderStatus.CANCELLED, [("TY-GTR", 1)]))

    assert (result.debited, result.credited) == (False, False)
    assert await _stock(session_factory, guitar.id) == 10
    order = await _order(session_factory, "1007")
    assert order.status == OrderStatus.CANCELLED.value
    assert order.stock_debited_at is None


@pytest.mark.asyncio
async def test_cancelled_order_is_not_debited_by_a_late_shipped_status(reconciler, guitar, session_factory):
    await reconciler.handle_event(_event("1012", OrderStatus.CANCELLED, [("TY-GTR", 2)]))

    result = await reconciler.handle_event(_event("1012", OrderStatus.SHIPPED, [("TY-GTR", 2)]))

    assert result.debited is False
    assert await _stock(session_factory, guitar.id) == 10
    order = await _order(session_factory, "1012")
    assert order.status == OrderStatus.CANCELLED.value
    assert order.observed_status == OrderStatus.SHIPPED.value
    assert order.stock_debited_at is None


@pytest.mark.asyncio
async def test_stale_pending_does_not_reopen_a_cancelled_order(reconciler, guitar, session_factory):
    await reconciler.handle_event(_event("1013", OrderStatus.CANCELLED, [("TY-GTR", 3)]))
    await reconciler.handle_event(_event("1013", OrderStatus.PENDING, [("TY-GTR", 3)]))

    assert (await _order(session_factory, "1013")).status == OrderStatus.CANCELLED.value

    result = await reconciler.handle_event(_event("1013", OrderStatus.PROCESSING, [("TY-GTR", 3)]))

    assert result.debited is False
    assert await _stock(session_factory, guitar.id) == 10
    order = await _order(session_factory, "1013")
    assert order.status == OrderStatus.CANCELLED.value
    assert order.stock_debited_at is None


@pytest.mark.asyncio
async def test_credited_order_keeps_terminal_status_after_late_shipped(reconciler, guitar, session_factory):
    await reconciler.handle_event(_event("1014", OrderStatus.PROCESSING, [("TY-GTR", 2)]))
    await reconciler.handle_event(_event("1014", OrderStatus.CANCELLED, [("TY-GTR", 2)]))

    result = await reconciler.handle_event(_event("1014", OrderStatus.SHIPPED, [("TY-GTR", 2)]))

    assert (result.debited, result.credited) == (False, False)
    assert await _stock(session_factory, guitar.id) == 10
    order = await _order(session_factory, "1014")
    assert order.status == OrderStatus.CANCELLED.value
    assert order.stock_credited_at is not None
    assert order.observed_status == OrderStatus.SHIPPED.value


@pytest.mark.asyncio
async def test_cancelled_pending_order_is_not_credited(reconciler, guitar, session_factory):
    await reconciler.handle_event(_event("1008", OrderStatus.PENDING, [("TY-GTR", 1)]))

    result = await reconciler.handle_event(_event("1008", OrderStatus.CANCELLED, [("TY-GTR", 1)]))

    assert result.credited is False
    assert await _stock(session_factory, guitar.id) == 10
    assert (await _order(session_factory, "1008")).stock_credited_at is None


@pytest.mark.asyncio
async def test_unknown_status_is_stored_without_stock_effect(reconciler, guitar, session_factory):
    result = await reconciler.handle_event(
        _event("1009", OrderStatus.UNKNOWN, [("TY-GTR", 1)], raw_status="AtCollectionPoint")
    )

    assert (result.debited, result.credited) == (False, False)
    assert await _stock(session_factory, guitar.id) == 10
    order = await _order(session_factory, "1009")
    assert order.status == OrderStatus.PENDING.value
    assert order.observed_status == OrderStatus.UNKNOWN.value
    assert order.raw_status == "AtCollectionPoint"


@pytest.mark.asyncio
async def test_unmapped_skus_are_reported_and_mapped_items_still_debited(reconciler, guitar, session_factory):
    result = await reconciler.handle_event(
        _event("1010", OrderStatus.PROCESSING, [("TY-GTR", 1), ("TY-MYSTERY", 2)])
    )

    assert result.debited is True
    assert result.unmapped_skus == ["TY-MYSTERY"]
    assert await _stock(session_factory, guitar.id) == 9


@pytest.mark.asyncio
async def test_line_items_for_same_product_are_aggregated(reconciler, guitar, map_sku, session_factory):
    await map_sku(MARKETPLACE, "TY-GTR-ALT", guitar.id)

    result = await reconciler.handle_event(
        _event("1011", OrderStatus.PROCESSING, [("TY-GTR", 1), ("TY-GTR-ALT", 2)])
    )

    assert result.debited is True
    assert await _stock(session_factory, guitar.id) == 7

    await reconciler.handle_event(_event("1011", OrderStatus.CANCELLED, [("TY-GTR", 1), ("TY-GTR-ALT", 2)]))
    assert await _stock(session_factory, guitar.id) == 10


@pytest.mark.asyncio
async def test_multi_product_order_is_all_or_nothing(reconciler, make_product, map_sku, session_factory):
    plenty = await make_product(stock=10)
    scarce = await make_product(stock=1)
    await map_sku(MARKETPLACE, "TY-PLENTY", plenty.id)
    await map_sku(MARKETPLACE, "TY-SCARCE", scarce.id)

    result = await reconciler.handle_event(
        _event("1012", OrderStatus.PROCESSING, [("TY-PLENTY", 2), ("TY-SCARCE", 3)])
    )

    assert result.debited is False
    assert result.error_code == "INSUFFICIENT_STOCK"
    assert await _stock(session_factory, plenty.id) == 10
    assert await _stock(session_factory, scarce.id) == 1

    order = await _order(session_factory, "1012")
    assert order.stock_debited_at is None
    assert order.status == OrderStatus.PENDING.value
    assert order.last_error is not None

    async with session_factory() as session:
        failure = await session.scalar(
            select(ActivityLog).where(ActivityLog.action == AuditAction.ORDER_RECONCILE_FAILED.value)
        )
    assert failure.success is False


@pytest.mark.asyncio
async def test_failed_debit_is_redriven_once_stock_arrives(reconciler, make_product, map_sku, stock_engine, session_factory):
    product = await make_product(stock=1)
    await map_sku(MARKETPLACE, "TY-LOW", product.id)
    await reconciler.handle_event(_event("1013", OrderStatus.PROCESSING, [("TY-LOW", 2)]))

    await stock_engine.apply_delta(product.id, 5, "Restock", StockLogType.ENTRY)
    summary = await reconciler.redrive_failed()

    assert summary["total"] == 1
    assert summary["reconciled"] == 1
    assert await _stock(session_factory, product.id) == 4
    order = await _order(session_factory, "1013")
    assert order.last_error is None
    assert order.status == OrderStatus.PROCESSING.value

    assert (await reconciler.redrive_failed())["total"] == 0


@pytest.mark.asyncio
async def test_mapping_added_later_is_picked_up_before_debit(reconciler, make_product, map_sku, session_factory):
    product = await make_product(stock=5)
    await reconciler.handle_event(_event("1014", OrderStatus.PENDING, [("TY-LATE", 1)]))

    await map_sku(MARKETPLACE, "TY-LATE", product.id)
    result = await reconciler.handle_event(_event("1014", OrderStatus.PROCESSING, [("TY-LATE", 1)]))

    assert result.unmapped_skus == []
    assert await _stock(session_factory, product.id) == 4


@pytest.mark.asyncio
async def test_queue_consumer_processes_published_events(reconciler, guitar, session_factory):
    reconciler.start()
    try:
        await reconciler.publish(_event("1015", OrderStatus.PROCESSING, [("TY-GTR", 1)]))
        await reconciler.publish(_event("1015", OrderStatus.PROCESSING, [("TY-GTR", 1)]))
        await reconciler.publish(_event("1016", OrderStatus.SHIPPED, [("TY-GTR", 2)]))
        await asyncio.wait_for(reconciler.queue.join(), timeout=10)
    finally:
        await reconciler.stop()

    assert reconciler.running is False
    assert await _stock(session_factory, guitar.id) == 7


@pytest.mark.asyncio
async def test_consumer_survives_unexpected_errors(reconciler, guitar, session_factory, mocker):
    original = reconciler.handle_event

    async def flaky(event):
        if event.order.order_id == "bad":
            raise RuntimeError("boom")
        return await original(event)

    mocker.patch.object(reconciler, "handle_event", side_effect=flaky)
    reconciler.start()
    try:
        await reconciler.publish(_event("bad", OrderStatus.PROCESSING, []))
        await reconciler.publish(_event("1017", OrderStatus.PROCESSING, [("TY-GTR", 1)]))
        await asyncio.wait_for(reconciler.queue.join(), timeout=10)
    finally:
        await reconciler.stop()

    assert await _stock(session_factory, guitar.id) == 9
