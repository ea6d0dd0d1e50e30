import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from stockledger.core.enums import OrderStatus
from stockledger.integrations.status_maps import get_status_map
from stockledger.schemas.order import MarketplaceOrder

logger = logging.getLogger(__name__)


def map_status(status_map: Dict[str, OrderStatus], raw_status: Optional[str], marketplace: str = "") -> OrderStatus:
    """Total lookup: unmapped vocabulary becomes UNKNOWN and is logged, never guessed."""
    if raw_status is None:
        return OrderStatus.UNKNOWN
    status = status_map.get(raw_status)
    if status is None:
        logger.warning(f"Unmapped order status '{raw_status}' from {marketplace or 'marketplace'}")
        return OrderStatus.UNKNOWN
    return status


class MarketplaceClient(ABC):
    """
    Read side of a marketplace integration.

    Implementations fetch orders and translate their status vocabulary
    through status_map. They produce MarketplaceOrder values only; they never
    change stock.
    """
    name: str = ""

    def __init__(self, api_credentials: Optional[Dict[str, str]] = None):
        self.api_credentials = api_credentials or {}

    @property
    def status_map(self) -> Dict[str, OrderStatus]:
        return get_status_map(self.name)

    def map_status(self, raw_status: Optional[str]) -> OrderStatus:
        return map_status(self.status_map, raw_status, self.name)

    @abstractmethod
    async def get_orders(self, start: datetime, end: datetime) -> List[MarketplaceOrder]:
        """Orders created or modified in [start, end]"""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[MarketplaceOrder]:
        """A single order by marketplace order id"""
        pass
