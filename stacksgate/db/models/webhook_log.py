"""WebhookLog model — append-only record of every delivery attempt."""

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from stacksgate.db.base import Base, JSONType


class WebhookLogRow(Base):
    __tablename__ = "webhook_logs"

    id = Column(String(64), primary_key=True)
    merchant_id = Column(String(255), nullable=False, index=True)
    # No FK: test deliveries carry no payment intent
    payment_intent_id = Column(String(64), nullable=True, index=True)

    event_type = Column(String(64), nullable=False)
    event_id = Column(String(64), nullable=True, index=True)
    webhook_url = Column(Text, nullable=False)
    request_payload = Column(JSONType, nullable=False, default=dict)

    response_status = Column(Integer, nullable=False, default=0)  # 0 = network error
    response_body = Column(Text, nullable=False, default="")
    delivered = Column(Boolean, nullable=False, default=False)
    attempt_number = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
