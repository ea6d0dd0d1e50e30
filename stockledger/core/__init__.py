"""
Core module exports.
"""
from .enums import (
    StockLogType,
    OrderStatus,
    WebhookStatus,
    AuditAction,
)

from .exceptions import (
    BaseServiceError,
    ValidationError,
    StockError,
    ProductNotFoundError,
    LockContentionError,
    InsufficientStockError,
    PersistenceFailureError,
    WebhookSignatureError,
)
