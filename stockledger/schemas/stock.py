"""
Schemas for stock mutation requests and results.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from stockledger.core.enums import StockLogType
from stockledger.schemas.base import BaseSchema


class StockDelta(BaseSchema):
    """One requested change to one product's stock."""
    product_id: int
    delta: int
    change_type: StockLogType
    reason: str = ""
    order_id: Optional[int] = None
    reference: Optional[str] = None


class StockUpdateResult(BaseSchema):
    product_id: int
    delta: int
    old_stock: Optional[int] = None
    new_stock: Optional[int] = None
    log_id: Optional[int] = None
    duplicate: bool = False
    not_found: bool = False


class BatchResult(BaseSchema):
    results: List[StockUpdateResult] = Field(default_factory=list)

    @property
    def applied(self) -> List[StockUpdateResult]:
        return [r for r in self.results if not r.duplicate and not r.not_found]

    @property
    def not_found(self) -> List[StockUpdateResult]:
        return [r for r in self.results if r.not_found]


class StockStatus(BaseSchema):
    product_id: int
    current_stock: int
    is_locked: bool
    locked_by: Optional[str] = None
    locked_until: Optional[datetime] = None


class StockLogRead(BaseSchema):
    id: int
    product_id: int
    order_id: Optional[int] = None
    type: StockLogType
    quantity: int
    old_stock: int
    new_stock: int
    reason: str
    reference: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime


class LedgerReport(BaseSchema):
    product_id: int
    consistent: bool
    entries: int
    ledger_stock: Optional[int] = None
    current_stock: int
    first_break: Optional[int] = None  # id of the first entry that breaks the chain


# --- API request bodies ---

class ApplyDeltaRequest(BaseSchema):
    product_id: int
    delta: int
    reason: str = Field(min_length=1)
    change_type: StockLogType = StockLogType.ADJUSTMENT
    reference: Optional[str] = None


class ApplyBatchRequest(BaseSchema):
    deltas: List[StockDelta] = Field(min_length=1)
    order_id: Optional[int] = None


class ApplyDeltaResponse(BaseSchema):
    product_id: int
    new_stock: Optional[int]
    old_stock: Optional[int] = None
    duplicate: bool = False
