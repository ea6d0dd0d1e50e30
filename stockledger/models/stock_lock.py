from sqlalchemy import Column, DateTime, Integer, String

from stockledger.database import Base, utcnow


class StockLock(Base):
    """
    Ephemeral advisory lock row, at most one per product.

    The primary key on product_id is the mutual exclusion: a second INSERT for
    the same product fails until the holder deletes its row or the sweep
    removes it after expires_at.
    """
    __tablename__ = "stock_locks"

    product_id = Column(Integer, primary_key=True, autoincrement=False)
    locked_by = Column(String(100), nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<StockLock product={self.product_id} by={self.locked_by} until={self.expires_at}>"
