# stockledger/models/stock_log.py
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from stockledger.database import Base, utcnow


class StockLog(Base):
    """
    Append-only ledger entry, one per committed stock mutation.

    new_stock == old_stock + quantity for every row, and the newest row for a
    product carries the product's current stock_quantity. Rows are never
    updated or deleted.
    """
    __tablename__ = "stock_logs"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True, index=True)  # None for manual adjustments

    type = Column(String(20), nullable=False, index=True)  # StockLogType value
    quantity = Column(Integer, nullable=False)  # signed delta
    old_stock = Column(Integer, nullable=False)
    new_stock = Column(Integer, nullable=False)

    reason = Column(Text, nullable=False, default="")
    reference = Column(String(255), nullable=True)
    created_by = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    product = relationship("Product", back_populates="stock_logs")
    order = relationship("Order", lazy="raise")

    __table_args__ = (
        # Natural key for the stock-delta idempotency fallback
        Index("ix_stock_logs_product_order_quantity", "product_id", "order_id", "quantity"),
    )

    def __repr__(self):
        return (
            f"<StockLog id={self.id} product={self.product_id} type={self.type} "
            f"{self.old_stock}->{self.new_stock}>"
        )
