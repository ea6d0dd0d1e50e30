"""
Inbound marketplace webhooks.

A webhook delivery is recorded as a WebhookEvent row, deduplicated on
webhook:{marketplace}:{event_type}:{event_id}, and - for order events -
turned into an OrderEvent on the reconciler queue. Webhooks never change
stock themselves.
"""

import base64
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from stockledger.core.enums import OrderStatus, WebhookStatus
from stockledger.core.exceptions import ValidationError, WebhookSignatureError
from stockledger.database import utcnow
from stockledger.integrations.base import map_status
from stockledger.integrations.events import OrderEvent
from stockledger.integrations.status_maps import get_status_map
from stockledger.models.webhook import WebhookEvent
from stockledger.schemas.order import MarketplaceOrder, MarketplaceOrderItem
from stockledger.services.idempotency import IdempotencyService, webhook_key
from stockledger.services.order_reconciler import OrderLifecycleReconciler

logger = logging.getLogger(__name__)

ORDER_EVENT_TYPES = frozenset({
    "order.created",
    "order.new",
    "order.updated",
    "order.status_changed",
    "order.cancelled",
})


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> None:
    """
    Check an HMAC-SHA256 signature of the raw body. Hex and base64 digests
    are both accepted. An empty secret disables checking.
    """
    if not secret:
        return
    if not signature:
        raise WebhookSignatureError("No signature provided")

    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    candidates = [digest.hex(), base64.b64encode(digest).decode()]

    signature = signature.strip()
    if signature.lower().startswith("sha256="):
        signature = signature[len("sha256="):]

    if not any(hmac.compare_digest(signature, expected) for expected in candidates):
        raise WebhookSignatureError("Invalid signature")


def derive_event_id(payload: Dict[str, Any]) -> str:
    """Delivery id from the payload, or a hash of its canonical JSON."""
    for field in ("eventId", "id"):
        value = payload.get(field)
        if value not in (None, ""):
            return str(value)
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _first(data: Dict[str, Any], *names: str, default=None):
    for name in names:
        if data.get(name) not in (None, ""):
            return data[name]
    return default


def _parse_date(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as Trendyol sends them
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class WebhookProcessor:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        idempotency: IdempotencyService,
        reconciler: OrderLifecycleReconciler,
        ttl_seconds: int = 86400,
    ):
        self.session_factory = session_factory
        self.idempotency = idempotency
        self.reconciler = reconciler
        self.ttl_seconds = ttl_seconds

    async def process(
        self,
        marketplace: str,
        event_type: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record and dispatch one webhook delivery.

        Returns a summary dict with status SUCCESS, IGNORED, FAILED or
        DUPLICATE. FAILED deliveries are not remembered, so the marketplace
        retrying them gets another attempt.
        """
        event_id = event_id or derive_event_id(payload)
        key = webhook_key(marketplace, event_type, event_id)

        async def operation():
            return await self._handle(marketplace, event_type, event_id, payload)

        try:
            result, was_new = await self.idempotency.with_idempotency(key, operation, self.ttl_seconds)
        except ValidationError as e:
            logger.warning(f"Webhook {key} rejected: {e}")
            return {"status": WebhookStatus.FAILED.value, "event_id": event_id, "error": str(e)}

        if not was_new:
            return {"status": "DUPLICATE", "event_id": event_id, "result": result}
        return result

    async def _handle(self, marketplace: str, event_type: str, event_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        webhook = await self._record(marketplace, event_type, event_id, payload)

        if event_type not in ORDER_EVENT_TYPES:
            logger.info(f"Ignoring {marketplace} webhook of type {event_type}")
            await self._set_status(webhook.id, WebhookStatus.IGNORED)
            return {"status": WebhookStatus.IGNORED.value, "event_id": event_id, "webhook_event_id": webhook.id}

        try:
            order = self.parse_order(marketplace, event_type, payload)
        except (PydanticValidationError, ValueError, TypeError, AttributeError) as e:
            await self._set_status(webhook.id, WebhookStatus.FAILED, error=str(e))
            raise ValidationError(f"Malformed {event_type} payload: {e}") from e

        await self.reconciler.publish(
            OrderEvent(marketplace=marketplace, order=order, source="webhook", webhook_event_id=webhook.id)
        )
        await self._set_status(webhook.id, WebhookStatus.SUCCESS)
        logger.info(f"Queued {marketplace} order {order.order_id} ({order.status.value}) from webhook {event_id}")
        return {
            "status": WebhookStatus.SUCCESS.value,
            "event_id": event_id,
            "webhook_event_id": webhook.id,
            "order_id": order.order_id,
            "order_status": order.status.value,
        }

    @staticmethod
    def parse_order(marketplace: str, event_type: str, payload: Dict[str, Any]) -> MarketplaceOrder:
        """
        Build a MarketplaceOrder from a webhook body.

        Accepts both our own field names and Trendyol's (orderNumber,
        shipmentPackageStatus, lines/merchantSku). The payload may wrap the
        order in an "order" or "data" object.
        """
        data = payload.get("order") or payload.get("data") or payload
        if not isinstance(data, dict):
            raise ValueError("order payload must be an object")

        order_id = _first(data, "order_id", "orderId", "orderNumber")
        if order_id is None:
            raise ValueError("order payload has no order id")

        raw_status = _first(data, "status", "shipmentPackageStatus", "orderStatus")
        if raw_status is None and event_type == "order.cancelled":
            status = OrderStatus.CANCELLED
        else:
            raw_status = str(raw_status) if raw_status is not None else None
            status = map_status(get_status_map(marketplace), raw_status, marketplace)

        items: List[MarketplaceOrderItem] = []
        for line in _first(data, "items", "lines", default=[]):
            items.append(
                MarketplaceOrderItem(
                    sku=str(_first(line, "sku", "merchantSku", "barcode")),
                    quantity=int(_first(line, "quantity", default=0)),
                    price=_first(line, "price", "amount"),
                )
            )

        return MarketplaceOrder(
            order_id=str(order_id),
            status=status,
            raw_status=raw_status,
            order_date=_parse_date(_first(data, "order_date", "orderDate")),
            total_amount=_first(data, "total_amount", "totalPrice"),
            items=items,
        )

    async def _record(self, marketplace: str, event_type: str, event_id: str, payload: Dict[str, Any]) -> WebhookEvent:
        """Insert the delivery row, or pick up the one left by a failed earlier attempt."""
        async with self.session_factory() as session:
            webhook = WebhookEvent(
                marketplace=marketplace,
                event_type=event_type,
                event_id=event_id,
                payload=payload,
                status=WebhookStatus.PROCESSING.value,
            )
            session.add(webhook)
            try:
                await session.commit()
                return webhook
            except IntegrityError:
                await session.rollback()

            webhook = await session.scalar(
                select(WebhookEvent).where(
                    WebhookEvent.marketplace == marketplace,
                    WebhookEvent.event_type == event_type,
                    WebhookEvent.event_id == event_id,
                )
            )
            webhook.payload = payload
            webhook.status = WebhookStatus.PROCESSING.value
            webhook.error = None
            await session.commit()
            return webhook

    async def _set_status(self, webhook_id: int, status: WebhookStatus, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            webhook = await session.get(WebhookEvent, webhook_id)
            webhook.status = status.value
            webhook.error = error
            webhook.processed_at = utcnow()
            await session.commit()
