# tests/unit/services/test_idempotency.py
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from stockledger.core.enums import WebhookStatus
from stockledger.database import utcnow
from stockledger.models.idempotency import IdempotencyRecord
from stockledger.models.order import Order
from stockledger.models.webhook import WebhookEvent
from stockledger.services.idempotency import (
    CacheBackend,
    DurableBackend,
    IdempotencyResult,
    IdempotencyService,
    order_credit_key,
    order_key,
    stock_key,
    webhook_key,
)


def test_key_formats():
    assert order_key("trendyol", "123") == "order:trendyol:123"
    assert order_credit_key("trendyol", "123", "CANCELLED") == "order-credit:trendyol:123:CANCELLED"
    assert stock_key(5, 9, -2) == "stock:5:9:-2"
    assert webhook_key("trendyol", "order.created", "evt-1") == "webhook:trendyol:order.created:evt-1"


# --- Durable backend ---

@pytest.mark.asyncio
async def test_durable_unknown_key_is_a_miss(session_factory):
    backend = DurableBackend(session_factory)

    assert await backend.get("order:trendyol:nope") is None


@pytest.mark.asyncio
async def test_durable_first_writer_wins(session_factory):
    backend = DurableBackend(session_factory)

    await backend.set("custom:1", {"value": "first"}, ttl_seconds=60)
    await backend.set("custom:1", {"value": "second"}, ttl_seconds=60)

    hit = await backend.get("custom:1")
    assert hit.is_new is False
    assert hit.cached_result == {"value": "first"}


@pytest.mark.asyncio
async def test_durable_expired_record_is_a_miss_and_can_be_replaced(session_factory):
    backend = DurableBackend(session_factory)
    async with session_factory() as session:
        now = utcnow()
        session.add(IdempotencyRecord(
            key="custom:2", result={"value": "old"}, created_at=now - timedelta(hours=2),
            expires_at=now - timedelta(hours=1),
        ))
        await session.commit()

    assert await backend.get("custom:2") is None

    await backend.set("custom:2", {"value": "new"}, ttl_seconds=60)
    assert (await backend.get("custom:2")).cached_result == {"value": "new"}


@pytest.mark.asyncio
async def test_durable_purge_expired(session_factory):
    backend = DurableBackend(session_factory)
    async with session_factory() as session:
        now = utcnow()
        session.add_all([
            IdempotencyRecord(key="a", result=None, created_at=now, expires_at=now - timedelta(seconds=1)),
            IdempotencyRecord(key="b", result=None, created_at=now, expires_at=now + timedelta(hours=1)),
        ])
        await session.commit()

    assert await backend.purge_expired() == 1
    assert await backend.get("b") is not None


@pytest.mark.asyncio
async def test_durable_falls_back_to_debited_order(session_factory):
    backend = DurableBackend(session_factory)
    async with session_factory() as session:
        session.add(Order(marketplace="trendyol", marketplace_order_id="A1", status="SHIPPED", stock_debited_at=utcnow()))
        session.add(Order(marketplace="trendyol", marketplace_order_id="A2", status="PENDING"))
        await session.commit()

    hit = await backend.get(order_key("trendyol", "A1"))
    assert hit.is_new is False
    assert hit.cached_result["debited"] is True

    assert await backend.get(order_key("trendyol", "A2")) is None


@pytest.mark.asyncio
async def test_durable_falls_back_to_credited_order(session_factory):
    backend = DurableBackend(session_factory)
    async with session_factory() as session:
        session.add(Order(
            marketplace="trendyol", marketplace_order_id="A1", status="CANCELLED",
            stock_debited_at=utcnow(), stock_credited_at=utcnow(),
        ))
        await session.commit()

    hit = await backend.get(order_credit_key("trendyol", "A1", "CANCELLED"))
    assert hit.cached_result["credited"] is True


@pytest.mark.asyncio
async def test_durable_falls_back_to_ledger_entry(stock_engine, make_product, session_factory):
    product = await make_product(stock=5)
    async with session_factory() as session:
        order = Order(marketplace="trendyol", marketplace_order_id="L1", status="PROCESSING")
        session.add(order)
        await session.commit()
        order_id = order.id
    await stock_engine.apply_delta(product.id, -2, reason="sale", change_type="SALE", order_id=order_id)

    backend = DurableBackend(session_factory)
    hit = await backend.get(stock_key(product.id, order_id, -2))

    assert hit.cached_result["new_stock"] == 3
    assert await backend.get(stock_key(product.id, order_id, -3)) is None
    assert await backend.get("stock:not:a:number") is None


@pytest.mark.asyncio
async def test_durable_falls_back_to_processed_webhook(session_factory):
    backend = DurableBackend(session_factory)
    async with session_factory() as session:
        session.add(WebhookEvent(marketplace="trendyol", event_type="order.created", event_id="e1",
                                 status=WebhookStatus.SUCCESS.value, payload={}))
        session.add(WebhookEvent(marketplace="trendyol", event_type="order.created", event_id="e2",
                                 status=WebhookStatus.FAILED.value, payload={}))
        await session.commit()

    assert await backend.get(webhook_key("trendyol", "order.created", "e1")) is not None
    assert await backend.get(webhook_key("trendyol", "order.created", "e2")) is None


# --- Cache backend ---

@pytest.mark.asyncio
async def test_cache_hit_is_decoded():
    client = AsyncMock()
    client.get.return_value = json.dumps({"result": {"x": 1}, "processed_at": "2026-01-01T10:00:00"})
    cache = CacheBackend(client)

    hit = await cache.get("order:trendyol:1")

    client.get.assert_awaited_once_with("idem:order:trendyol:1")
    assert hit.is_new is False
    assert hit.cached_result == {"x": 1}
    assert hit.processed_at.year == 2026


@pytest.mark.asyncio
async def test_cache_error_is_a_miss():
    client = AsyncMock()
    client.get.side_effect = RedisConnectionError("redis down")
    cache = CacheBackend(client)

    assert await cache.get("order:trendyol:1") is None


@pytest.mark.asyncio
async def test_cache_set_error_is_swallowed():
    client = AsyncMock()
    client.set.side_effect = RedisError("redis down")
    cache = CacheBackend(client)

    await cache.set("order:trendyol:1", {"x": 1}, ttl_seconds=60)

    client.set.assert_awaited_once()
    assert client.set.call_args.kwargs == {"ex": 60, "nx": True}


@pytest.mark.asyncio
async def test_cache_unreadable_entry_is_a_miss():
    client = AsyncMock()
    client.get.return_value = "not json"

    assert await CacheBackend(client).get("k") is None


# --- Service ---

@pytest.mark.asyncio
async def test_with_idempotency_runs_operation_once(session_factory):
    service = IdempotencyService(DurableBackend(session_factory))
    operation = AsyncMock(return_value={"done": True})

    first = await service.with_idempotency("custom:op", operation, ttl_seconds=60)
    second = await service.with_idempotency("custom:op", operation, ttl_seconds=60)

    assert first == ({"done": True}, True)
    assert second == ({"done": True}, False)
    operation.assert_awaited_once()


@pytest.mark.asyncio
async def test_with_idempotency_failure_is_not_recorded(session_factory):
    service = IdempotencyService(DurableBackend(session_factory))
    operation = AsyncMock(side_effect=[RuntimeError("boom"), {"done": True}])

    with pytest.raises(RuntimeError):
        await service.with_idempotency("custom:retry", operation)

    result, was_new = await service.with_idempotency("custom:retry", operation)
    assert was_new is True
    assert result == {"done": True}


@pytest.mark.asyncio
async def test_cache_outage_falls_through_to_durable_store(session_factory):
    client = AsyncMock()
    client.get.side_effect = RedisConnectionError("redis down")
    client.set.side_effect = RedisConnectionError("redis down")
    service = IdempotencyService(DurableBackend(session_factory), cache=CacheBackend(client))

    await service.mark_processed("custom:k", {"v": 1}, ttl_seconds=60)
    check = await service.check("custom:k")

    assert check.is_new is False
    assert check.cached_result == {"v": 1}


@pytest.mark.asyncio
async def test_durable_hit_warms_the_cache(mocker):
    durable = mocker.AsyncMock(spec=DurableBackend)
    durable.get.return_value = IdempotencyResult(is_new=False, cached_result={"v": 2})
    cache = mocker.AsyncMock(spec=CacheBackend)
    cache.get.return_value = None
    service = IdempotencyService(durable, cache=cache, default_ttl=120)

    check = await service.check("custom:warm")

    assert check.cached_result == {"v": 2}
    cache.set.assert_awaited_once_with("custom:warm", {"v": 2}, 120)


@pytest.mark.asyncio
async def test_cache_hit_skips_durable_store(mocker):
    durable = mocker.AsyncMock(spec=DurableBackend)
    cache = mocker.AsyncMock(spec=CacheBackend)
    cache.get.return_value = IdempotencyResult(is_new=False, cached_result={"v": 3})
    service = IdempotencyService(durable, cache=cache)

    check = await service.check("custom:hot")

    assert check.is_new is False
    durable.get.assert_not_awaited()


@pytest.mark.asyncio
async def test_new_key_reports_is_new(session_factory):
    service = IdempotencyService(DurableBackend(session_factory))

    check = await service.check("order:trendyol:never-seen")

    assert check.is_new is True
    assert check.cached_result is None
