"""Pydantic entities for payment intents, their audit events and chain settlements."""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from stacksgate.core.clock import utc_now
from stacksgate.domain.payment_status import PaymentStatus

SATS_PER_BTC = 100_000_000


def new_payment_intent_id() -> str:
    return f"pi_{uuid.uuid4().hex[:24]}"


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:24]}"


class PaymentIntent(BaseModel):
    """One requested payment. Mutated only through PaymentIntentService.transition_status."""

    id: str = Field(default_factory=new_payment_intent_id)
    merchant_id: str
    amount_sats: int
    amount_usd: Decimal | None = None  # frozen at creation
    currency: str = "sbtc"
    description: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    stacks_address: str | None = None
    bitcoin_address: str | None = None
    sbtc_tx_id: str | None = None
    confirmation_count: int = 0
    status: PaymentStatus = PaymentStatus.REQUIRES_PAYMENT
    created_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 1


class PaymentEvent(BaseModel):
    """Append-only audit record of a payment intent change."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    payment_intent_id: str
    event_type: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class TransactionStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SBTCTransaction(BaseModel):
    """One chain-side settlement attempt for a payment intent."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    payment_intent_id: str
    bitcoin_txid: str | None = None
    stacks_txid: str | None = None
    deposit_address: str
    amount_sats: int
    status: TransactionStatus = TransactionStatus.PENDING
    confirmation_count: int = 0
    block_height: int | None = None
    confirmed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def chain_reference(self) -> str | None:
        """Reference to poll: the Stacks-side txid when known, else the Bitcoin one."""
        return self.stacks_txid or self.bitcoin_txid
