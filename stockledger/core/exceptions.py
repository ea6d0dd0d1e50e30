
class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    error_code = "SERVICE_ERROR"


class ValidationError(BaseServiceError):
    """Raised when request data validation fails."""
    error_code = "VALIDATION_ERROR"


class StockError(BaseServiceError):
    """Base exception for stock mutation errors."""
    error_code = "STOCK_ERROR"


class ProductNotFoundError(StockError):
    """Raised when product is not found."""
    error_code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: int):
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class LockContentionError(StockError):
    """Raised when another holder owns the product's stock lock."""
    error_code = "LOCK_CONTENTION"

    def __init__(self, product_ids):
        if isinstance(product_ids, int):
            product_ids = [product_ids]
        self.product_ids = list(product_ids)
        super().__init__(
            f"Could not acquire stock lock for product(s) {self.product_ids} - another operation in progress"
        )


class InsufficientStockError(StockError):
    """Raised when a delta would drive stock below zero. Never clamped."""
    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, available: int, requested: int):
        super().__init__(
            f"Insufficient stock for product {product_id}. Available: {available}, Required: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested


class PersistenceFailureError(StockError):
    """Raised when the stock transaction could not be committed."""
    error_code = "PERSISTENCE_FAILURE"


class WebhookSignatureError(BaseServiceError):
    """Raised when an inbound webhook signature is missing or wrong."""
    error_code = "INVALID_SIGNATURE"
