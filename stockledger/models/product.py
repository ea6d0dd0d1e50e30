"""
Product model: identity and the single shared mutable stock counter.

stock_quantity is written only by StockMutationEngine. The CHECK constraint
is the last line of defence for the non-negativity invariant.
"""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship

from stockledger.database import Base, utcnow


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    sku = Column(String(100), unique=True, nullable=False, index=True)
    title = Column(String(255), nullable=True)

    stock_quantity = Column(Integer, nullable=False, default=0)
    location = Column(String(100), nullable=True)  # shelf / bin label

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    stock_logs = relationship("StockLog", back_populates="product", lazy="raise")
    mappings = relationship("ProductMapping", back_populates="product", lazy="raise")

    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
    )

    def __repr__(self):
        return f"<Product id={self.id} sku={self.sku} stock={self.stock_quantity}>"
