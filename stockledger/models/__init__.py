from .activity_log import ActivityLog
from .idempotency import IdempotencyRecord
from .order import Order, OrderItem
from .product import Product
from .product_mapping import ProductMapping
from .stock_lock import StockLock
from .stock_log import StockLog
from .webhook import WebhookEvent

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'ActivityLog',
    'IdempotencyRecord',
    'Order',
    'OrderItem',
    'Product',
    'ProductMapping',
    'StockLock',
    'StockLog',
    'WebhookEvent',
]
