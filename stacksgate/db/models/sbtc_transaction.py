"""SBTCTransaction model — one chain-side settlement attempt per row."""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String

from stacksgate.db.base import Base


class SBTCTransactionRow(Base):
    __tablename__ = "sbtc_transactions"

    id = Column(String(64), primary_key=True)
    payment_intent_id = Column(String(64), ForeignKey("payment_intents.id"), nullable=False, index=True)

    bitcoin_txid = Column(String(128), nullable=True)
    stacks_txid = Column(String(128), nullable=True)
    deposit_address = Column(String(128), nullable=False)
    amount_sats = Column(BigInteger, nullable=False)

    status = Column(String(32), nullable=False, default="pending", index=True)  # pending, confirmed, failed
    confirmation_count = Column(Integer, nullable=False, default=0)
    block_height = Column(Integer, nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), index=True)
