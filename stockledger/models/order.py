# stockledger/models/order.py
from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from stockledger.core.enums import OrderStatus
from stockledger.database import Base, utcnow


class Order(Base):
    """
    Locally persisted marketplace order.

    stock_debited_at / stock_credited_at are the durable record that the
    order's debit and compensating credit have been committed.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    marketplace = Column(String(50), nullable=False, index=True)
    marketplace_order_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value, index=True)
    # Latest status seen on the marketplace; status only moves once its stock effect committed
    observed_status = Column(String(20), nullable=True)
    raw_status = Column(String(100), nullable=True)
    order_date = Column(DateTime, nullable=True)
    total_amount = Column(Float, nullable=True)

    stock_debited_at = Column(DateTime, nullable=True)
    stock_credited_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="selectin")

    __table_args__ = (
        UniqueConstraint("marketplace", "marketplace_order_id", name="uq_orders_marketplace_order"),
    )

    def __repr__(self):
        return f"<Order id={self.id} {self.marketplace}:{self.marketplace_order_id} status={self.status}>"


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    sku = Column(String(100), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=True)
    # None when the SKU had no stock-synced mapping at ingestion time
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True, index=True)

    order = relationship("Order", back_populates="items")

    def __repr__(self):
        return f"<OrderItem order={self.order_id} sku={self.sku} qty={self.quantity} product={self.product_id}>"
