"""Merchant model — only the webhook configuration the settlement engine reads."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text

from stacksgate.db.base import Base


class MerchantRow(Base):
    __tablename__ = "merchants"

    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=True)
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
