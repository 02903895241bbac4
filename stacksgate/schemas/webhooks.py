"""Pydantic schemas for webhook delivery and its audit log."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from stacksgate.core.clock import utc_now


class WebhookTarget(BaseModel):
    """Where and how a merchant wants to be notified."""

    merchant_id: str
    url: str
    secret: str | None = None


class WebhookJob(BaseModel):
    """One queued delivery attempt."""

    merchant_id: str
    payload: dict[str, Any]
    payment_intent_id: str | None = None
    attempt: int = 1
    url: str | None = None  # resolved from the merchant directory when None
    secret: str | None = None


class WebhookLogEntry(BaseModel):
    """One delivery attempt. Written once, never updated."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    merchant_id: str
    payment_intent_id: str | None = None
    event_type: str
    event_id: str | None = None
    webhook_url: str
    request_payload: dict[str, Any] = Field(default_factory=dict)
    response_status: int = 0  # 0 = never reached the network
    response_body: str = ""
    delivered: bool = False
    attempt_number: int = 1
    created_at: datetime = Field(default_factory=utc_now)


class WebhookStats(BaseModel):
    """Delivery statistics for a merchant over a trailing window."""

    total_webhooks: int = 0
    successful_webhooks: int = 0
    failed_webhooks: int = 0
    success_rate: int = 0  # percent
    avg_attempts: float = 0.0
    unique_event_types: int = 0
