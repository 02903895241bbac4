"""PaymentIntent and PaymentEvent models — payment lifecycle and its audit trail."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, Numeric, String, Text

from stacksgate.db.base import Base, JSONType


class PaymentIntentRow(Base):
    __tablename__ = "payment_intents"

    id = Column(String(64), primary_key=True)  # pi_<24 hex>
    merchant_id = Column(String(255), nullable=False, index=True)

    amount_sats = Column(BigInteger, nullable=False)
    amount_usd = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(16), nullable=False, default="sbtc")
    description = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    metadata_ = Column("metadata", JSONType, nullable=False, default=dict)

    stacks_address = Column(String(128), nullable=True)
    bitcoin_address = Column(String(128), nullable=True)
    sbtc_tx_id = Column(String(128), nullable=True)
    confirmation_count = Column(Integer, nullable=False, default=0)

    status = Column(String(32), nullable=False, default="requires_payment", index=True)
    version = Column(Integer, nullable=False, default=1)  # compare-and-swap guard

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))


class PaymentEventRow(Base):
    __tablename__ = "payment_events"

    id = Column(String(64), primary_key=True)
    payment_intent_id = Column(String(64), ForeignKey("payment_intents.id"), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)  # payment_intent.<status>
    data = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
