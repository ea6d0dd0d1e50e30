"""
Order Poller

Periodically asks each registered marketplace client for orders created or
modified within the lookback window and publishes one OrderEvent per order to
the reconciler queue. The poller is a producer only: it never touches stock,
so re-polling the same window is harmless.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from stockledger.integrations.base import MarketplaceClient
from stockledger.integrations.events import OrderEvent
from stockledger.services.order_reconciler import OrderLifecycleReconciler

logger = logging.getLogger(__name__)


class OrderPoller:

    def __init__(self, reconciler: OrderLifecycleReconciler, lookback_hours: int = 24):
        self.reconciler = reconciler
        self.lookback_hours = lookback_hours
        self.clients: Dict[str, MarketplaceClient] = {}

    def register_client(self, client: MarketplaceClient, name: Optional[str] = None) -> None:
        name = name or client.name
        if not name:
            raise ValueError("Marketplace client needs a name")
        self.clients[name] = client
        logger.info(f"Registered order poller client for {name}")

    async def poll(self, now: Optional[datetime] = None) -> Dict:
        """
        Fetch recent orders from every marketplace and enqueue them.

        One marketplace failing does not stop the others; its error is
        recorded in the summary.
        """
        end = now or datetime.now(timezone.utc).replace(tzinfo=None)
        start = end - timedelta(hours=self.lookback_hours)

        summary = {"marketplaces": len(self.clients), "published": 0, "errors": 0, "details": {}}
        for name, client in self.clients.items():
            try:
                orders = await client.get_orders(start, end)
            except Exception as e:
                # Marketplace APIs fail in many ways; the next poll covers the same window
                logger.error(f"Error polling {name} orders: {e}", exc_info=True)
                summary["errors"] += 1
                summary["details"][name] = {"error": str(e)}
                continue

            for order in orders:
                await self.reconciler.publish(OrderEvent(marketplace=name, order=order, source="poll"))

            summary["published"] += len(orders)
            summary["details"][name] = {"published": len(orders)}
            logger.info(f"Published {len(orders)} {name} order(s) from {start:%Y-%m-%d %H:%M} to {end:%Y-%m-%d %H:%M}")

        return summary
