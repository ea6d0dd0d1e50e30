# stockledger/models/product_mapping.py
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from stockledger.database import Base, utcnow


class ProductMapping(Base):
    """
    Maps a marketplace SKU to the internal product whose stock it draws on.
    Mappings with sync_stock=False are known but their stock is not managed here.
    """
    __tablename__ = "product_mappings"

    id = Column(Integer, primary_key=True)
    marketplace = Column(String(50), nullable=False)
    remote_sku = Column(String(100), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    sync_stock = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    product = relationship("Product", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint('marketplace', 'remote_sku', name='uq_product_mappings_marketplace_sku'),
    )
