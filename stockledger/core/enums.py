"""
Shared enums and constants used across the application.
"""

from enum import Enum


class StockLogType(str, Enum):
    """Semantic type of a ledger entry. Chosen by the caller, never inferred from the sign."""
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    SALE = "SALE"
    RETURN = "RETURN"
    CANCEL = "CANCEL"
    ADJUSTMENT = "ADJUSTMENT"
    DAMAGED = "DAMAGED"
    TRANSFER = "TRANSFER"

    @property
    def required_sign(self) -> int:
        """+1 / -1 for directional types, 0 when either sign is allowed."""
        if self in (StockLogType.ENTRY, StockLogType.RETURN, StockLogType.CANCEL):
            return 1
        if self in (StockLogType.EXIT, StockLogType.SALE, StockLogType.DAMAGED):
            return -1
        return 0


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    RETURNED = "RETURNED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_debit_status(self) -> bool:
        return self in DEBIT_STATUSES

    @property
    def is_terminal_credit(self) -> bool:
        return self in CREDIT_STATUSES


DEBIT_STATUSES = frozenset({OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED})
CREDIT_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.RETURNED})


class WebhookStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    IGNORED = "IGNORED"


class AuditAction(str, Enum):
    STOCK_UPDATE = "STOCK_UPDATE"
    STOCK_UPDATE_FAILED = "STOCK_UPDATE_FAILED"
    BULK_STOCK_UPDATE = "BULK_STOCK_UPDATE"
    BULK_STOCK_UPDATE_FAILED = "BULK_STOCK_UPDATE_FAILED"
    ORDER_DEBITED = "ORDER_DEBITED"
    ORDER_CREDITED = "ORDER_CREDITED"
    ORDER_RECONCILE_FAILED = "ORDER_RECONCILE_FAILED"
