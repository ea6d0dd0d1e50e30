"""
Order events exchanged between marketplace producers and the reconciler.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from stockledger.core.enums import OrderStatus
from stockledger.schemas.base import BaseSchema


class MarketplaceOrderItem(BaseSchema):
    sku: str
    quantity: int = Field(gt=0)
    price: Optional[float] = None


class MarketplaceOrder(BaseSchema):
    """An order as reported by a marketplace, status already mapped to OrderStatus."""
    order_id: str
    status: OrderStatus
    raw_status: Optional[str] = None
    order_date: Optional[datetime] = None
    total_amount: Optional[float] = None
    items: List[MarketplaceOrderItem] = Field(default_factory=list)


class ReconcileResult(BaseSchema):
    marketplace: str
    marketplace_order_id: str
    order_id: Optional[int] = None
    status: OrderStatus
    debited: bool = False
    credited: bool = False
    duplicate: bool = False
    unmapped_skus: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
