from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB

from stockledger.core.enums import WebhookStatus
from stockledger.database import Base, utcnow


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True)
    marketplace = Column(String(50), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    event_id = Column(String(255), nullable=False)
    payload = Column(JSON().with_variant(JSONB, "postgresql"))
    status = Column(String(20), nullable=False, default=WebhookStatus.PENDING.value, index=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("marketplace", "event_type", "event_id", name="uq_webhook_events_delivery"),
    )

    def __repr__(self):
        return f"<WebhookEvent {self.marketplace}:{self.event_type}:{self.event_id} status={self.status}>"
