from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from stockledger.database import Base, utcnow


class IdempotencyRecord(Base):
    """Durable outcome of the first successful processing of a business event."""
    __tablename__ = "idempotency_records"

    id = Column(Integer, primary_key=True)
    key = Column(String(255), unique=True, nullable=False)
    result = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<IdempotencyRecord {self.key} until={self.expires_at}>"
