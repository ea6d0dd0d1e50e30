# stockledger/models/activity_log.py
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from stockledger.database import Base, utcnow


class ActivityLog(Base):
    """
    Append-only audit trail: who did what, to which resource, and whether it worked.

    This includes:
    - Stock changes (with old and new values in details)
    - Failed stock mutation attempts
    - Order debits, credits and reconciliation failures

    Written by the stock path, never read by it.
    """
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True)
    user_id = Column(String(100), nullable=True, index=True)
    action = Column(String(50), nullable=False, index=True)
    resource = Column(String(50), nullable=False, index=True)  # 'PRODUCT', 'ORDER'
    resource_id = Column(String(100), nullable=True, index=True)

    details = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    ip_address = Column(String(64), nullable=False, default="system")
    success = Column(Boolean, nullable=False, default=True)
    error_code = Column(String(50), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<ActivityLog {self.action} {self.resource} {self.resource_id} success={self.success}>"
