"""
Events that marketplace producers (pollers, webhook handlers) put on the
reconciler queue. Producers never touch stock; the reconciler is the only
consumer that turns these into stock mutations.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from stockledger.schemas.order import MarketplaceOrder


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderEvent(BaseModel):
    marketplace: str
    order: MarketplaceOrder
    source: str = "poll"  # 'poll' or 'webhook'
    received_at: datetime = Field(default_factory=_now)
    webhook_event_id: Optional[int] = None
