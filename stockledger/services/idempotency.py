"""
Idempotency store: "has this exact business event already been processed?"

Two backends behind one interface:

- CacheBackend: redis, best-effort. Any cache error is a miss, never a hit.
- DurableBackend: the idempotency_records table plus natural-key lookups
  against the tables the side effects themselves write (orders, stock_logs,
  webhook_events). It is always consulted before an event is declared new.

IdempotencyService composes them. It is an optimisation against redundant
work; the stock ledger's own backstop is the lock plus the natural-key
re-check inside the mutation transaction.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockledger.core.enums import WebhookStatus
from stockledger.database import utcnow
from stockledger.models.idempotency import IdempotencyRecord
from stockledger.models.order import Order
from stockledger.models.stock_log import StockLog
from stockledger.models.webhook import WebhookEvent

logger = logging.getLogger(__name__)

ORDER_PREFIX = "order"
ORDER_CREDIT_PREFIX = "order-credit"
STOCK_PREFIX = "stock"
WEBHOOK_PREFIX = "webhook"


def order_key(marketplace: str, marketplace_order_id: str) -> str:
    return f"{ORDER_PREFIX}:{marketplace}:{marketplace_order_id}"


def order_credit_key(marketplace: str, marketplace_order_id: str, status: str) -> str:
    return f"{ORDER_CREDIT_PREFIX}:{marketplace}:{marketplace_order_id}:{status}"


def stock_key(product_id: int, order_id: int, quantity: int) -> str:
    return f"{STOCK_PREFIX}:{product_id}:{order_id}:{quantity}"


def webhook_key(marketplace: str, event_type: str, event_id: str) -> str:
    return f"{WEBHOOK_PREFIX}:{marketplace}:{event_type}:{event_id}"


@dataclass
class IdempotencyResult:
    is_new: bool
    cached_result: Optional[Any] = None
    processed_at: Optional[datetime] = None


class IdempotencyBackend(ABC):

    @abstractmethod
    async def get(self, key: str) -> Optional[IdempotencyResult]:
        """Return the recorded outcome for key, or None if nothing is recorded."""

    @abstractmethod
    async def set(self, key: str, result: Any, ttl_seconds: int) -> None:
        """Record the outcome for key. The first recorded outcome wins."""


class CacheBackend(IdempotencyBackend):
    """Redis-backed fast path. Outages degrade to misses."""

    def __init__(self, client: redis.Redis, namespace: str = "idem:"):
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str) -> "CacheBackend":
        return cls(redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[IdempotencyResult]:
        try:
            raw = await self.client.get(self.namespace + key)
        except (RedisError, OSError) as e:
            logger.warning(f"[Idempotency] Cache check failed for {key}, falling back to durable store: {e}")
            return None

        if raw is None:
            return None

        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"[Idempotency] Unreadable cache entry for {key}, ignoring")
            return None

        processed_at = payload.get("processed_at")
        return IdempotencyResult(
            is_new=False,
            cached_result=payload.get("result"),
            processed_at=datetime.fromisoformat(processed_at) if processed_at else None,
        )

    async def set(self, key: str, result: Any, ttl_seconds: int) -> None:
        payload = json.dumps({"result": result, "processed_at": utcnow().isoformat()}, default=str)
        try:
            await self.client.set(self.namespace + key, payload, ex=ttl_seconds, nx=True)
        except (RedisError, OSError) as e:
            logger.warning(f"[Idempotency] Failed to cache {key}: {e}")

    async def close(self) -> None:
        await self.client.aclose()


NaturalLookup = Callable[[AsyncSession, str], Awaitable[Optional[IdempotencyResult]]]


class DurableBackend(IdempotencyBackend):
    """
    Database-backed ground truth.

    get() checks idempotency_records first, then falls back to the natural key
    of the event class encoded in the key prefix.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._natural_lookups: Dict[str, NaturalLookup] = {
            ORDER_PREFIX: self._lookup_order_debit,
            ORDER_CREDIT_PREFIX: self._lookup_order_credit,
            STOCK_PREFIX: self._lookup_stock_delta,
            WEBHOOK_PREFIX: self._lookup_webhook,
        }

    async def get(self, key: str) -> Optional[IdempotencyResult]:
        async with self.session_factory() as session:
            record = await session.scalar(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.expires_at > utcnow(),
                )
            )
            if record is not None:
                return IdempotencyResult(is_new=False, cached_result=record.result, processed_at=record.created_at)

            prefix = key.split(":", 1)[0]
            lookup = self._natural_lookups.get(prefix)
            if lookup is None:
                return None
            return await lookup(session, key)

    async def set(self, key: str, result: Any, ttl_seconds: int) -> None:
        now = utcnow()
        async with self.session_factory() as session:
            try:
                # An expired record for the same key would otherwise block the insert
                await session.execute(
                    delete(IdempotencyRecord).where(
                        IdempotencyRecord.key == key,
                        IdempotencyRecord.expires_at <= now,
                    )
                )
                session.add(
                    IdempotencyRecord(
                        key=key,
                        result=result,
                        created_at=now,
                        expires_at=now + timedelta(seconds=ttl_seconds),
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug(f"[Idempotency] {key} already recorded, keeping first outcome")

    async def purge_expired(self) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= utcnow())
            )
            await session.commit()
        return result.rowcount or 0

    # --- natural-key fallbacks -------------------------------------------

    async def _lookup_order_debit(self, session: AsyncSession, key: str) -> Optional[IdempotencyResult]:
        parts = key.split(":", 2)
        if len(parts) != 3:
            return None
        _, marketplace, marketplace_order_id = parts
        order = await session.scalar(
            select(Order).where(
                Order.marketplace == marketplace,
                Order.marketplace_order_id == marketplace_order_id,
                Order.stock_debited_at.is_not(None),
            )
        )
        if order is None:
            return None
        return IdempotencyResult(
            is_new=False,
            cached_result={"order_id": order.id, "status": order.status, "debited": True},
            processed_at=order.stock_debited_at,
        )

    async def _lookup_order_credit(self, session: AsyncSession, key: str) -> Optional[IdempotencyResult]:
        # order-credit:{marketplace}:{marketplace_order_id}:{status}
        head, _, _status = key.rpartition(":")
        parts = head.split(":", 2)
        if len(parts) != 3:
            return None
        _, marketplace, marketplace_order_id = parts
        order = await session.scalar(
            select(Order).where(
                Order.marketplace == marketplace,
                Order.marketplace_order_id == marketplace_order_id,
                Order.stock_credited_at.is_not(None),
            )
        )
        if order is None:
            return None
        return IdempotencyResult(
            is_new=False,
            cached_result={"order_id": order.id, "status": order.status, "credited": True},
            processed_at=order.stock_credited_at,
        )

    async def _lookup_stock_delta(self, session: AsyncSession, key: str) -> Optional[IdempotencyResult]:
        try:
            _, product_id, order_id, quantity = key.split(":")
            product_id, order_id, quantity = int(product_id), int(order_id), int(quantity)
        except ValueError:
            return None
        entry = await find_stock_log(session, product_id, order_id, quantity)
        if entry is None:
            return None
        return IdempotencyResult(
            is_new=False,
            cached_result=stock_log_result(entry),
            processed_at=entry.created_at,
        )

    async def _lookup_webhook(self, session: AsyncSession, key: str) -> Optional[IdempotencyResult]:
        parts = key.split(":", 3)
        if len(parts) != 4:
            return None
        _, marketplace, event_type, event_id = parts
        webhook = await session.scalar(
            select(WebhookEvent).where(
                WebhookEvent.marketplace == marketplace,
                WebhookEvent.event_type == event_type,
                WebhookEvent.event_id == event_id,
                WebhookEvent.status.in_([WebhookStatus.SUCCESS.value, WebhookStatus.IGNORED.value]),
            )
        )
        if webhook is None:
            return None
        return IdempotencyResult(
            is_new=False,
            cached_result={"webhook_event_id": webhook.id, "status": webhook.status},
            processed_at=webhook.processed_at or webhook.created_at,
        )


async def find_stock_log(session: AsyncSession, product_id: int, order_id: int, quantity: int) -> Optional[StockLog]:
    """The ledger row that already applied this (product, order, delta), if any."""
    return await session.scalar(
        select(StockLog)
        .where(
            StockLog.product_id == product_id,
            StockLog.order_id == order_id,
            StockLog.quantity == quantity,
        )
        .order_by(StockLog.id)
        .limit(1)
    )


def stock_log_result(entry: StockLog) -> Dict[str, Any]:
    return {
        "product_id": entry.product_id,
        "old_stock": entry.old_stock,
        "new_stock": entry.new_stock,
        "quantity": entry.quantity,
        "log_id": entry.id,
    }


class IdempotencyService:
    """
    Cache first, durable store always before declaring an event new.
    """

    def __init__(
        self,
        durable: DurableBackend,
        cache: Optional[CacheBackend] = None,
        default_ttl: int = 3600,
    ):
        self.durable = durable
        self.cache = cache
        self.default_ttl = default_ttl

    async def check(self, key: str) -> IdempotencyResult:
        if self.cache is not None:
            hit = await self.cache.get(key)
            if hit is not None:
                return hit

        hit = await self.durable.get(key)
        if hit is not None:
            if self.cache is not None:
                await self.cache.set(key, hit.cached_result, self.default_ttl)
            return hit

        return IdempotencyResult(is_new=True)

    async def mark_processed(self, key: str, result: Any, ttl_seconds: Optional[int] = None) -> None:
        ttl = ttl_seconds or self.default_ttl
        await self.durable.set(key, result, ttl)
        if self.cache is not None:
            await self.cache.set(key, result, ttl)

    async def with_idempotency(
        self,
        key: str,
        operation: Callable[[], Awaitable[Any]],
        ttl_seconds: Optional[int] = None,
    ) -> Tuple[Any, bool]:
        """
        Run operation once per key.

        Returns (result, was_new). On a hit the cached result comes back and
        operation is not called. If operation raises, nothing is recorded and
        the error propagates, so the event stays re-drivable.
        """
        check = await self.check(key)
        if not check.is_new:
            logger.info(f"[Idempotency] {key} already processed")
            return check.cached_result, False

        result = await operation()
        await self.mark_processed(key, result, ttl_seconds)
        return result, True

    async def purge_expired(self) -> int:
        count = await self.durable.purge_expired()
        if count:
            logger.info(f"Purged {count} expired idempotency records")
        return count

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
