"""Persistence protocols for the settlement engine.

Provides:
- ``PaymentIntentRepository`` — intents plus their append-only event trail
- ``SBTCTransactionRepository`` — chain-side settlement attempts
- ``WebhookLogRepository`` — append-only delivery attempt log
- ``MerchantDirectory`` — read-only lookup of merchant webhook configuration

Two implementations ship: in-memory (``repositories.memory``) for tests and
single-process deployments, and SQLAlchemy (``repositories.sql``) for Postgres.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from stacksgate.schemas.payments import PaymentEvent, PaymentIntent, SBTCTransaction
from stacksgate.schemas.webhooks import WebhookLogEntry, WebhookTarget


@runtime_checkable
class PaymentIntentRepository(Protocol):
    async def add(self, intent: PaymentIntent, event: PaymentEvent) -> None:
        """Insert a new intent together with its creation event."""
        ...

    async def get(self, intent_id: str) -> PaymentIntent | None: ...

    async def list_by_merchant(self, merchant_id: str, limit: int = 50, offset: int = 0) -> list[PaymentIntent]:
        """Newest first."""
        ...

    async def list_expired(self, now: datetime) -> list[PaymentIntent]:
        """Non-terminal intents (requires_payment or processing) whose expiry is before ``now``."""
        ...

    async def save_transition(
        self,
        updated: PaymentIntent,
        expected_version: int,
        event: PaymentEvent | None,
    ) -> bool:
        """Compare-and-swap write of ``updated`` plus its event, atomically.

        Succeeds only while the stored version still equals ``expected_version``.
        Returns False when another writer got there first; nothing is written then.
        """
        ...

    async def list_events(self, intent_id: str) -> list[PaymentEvent]:
        """Oldest first."""
        ...


@runtime_checkable
class SBTCTransactionRepository(Protocol):
    async def add(self, tx: SBTCTransaction) -> None:
        """Insert a settlement attempt.

        Raises InvalidStateError if the intent already has a pending attempt.
        """
        ...

    async def get(self, tx_id: str) -> SBTCTransaction | None: ...

    async def get_active_for_intent(self, intent_id: str) -> SBTCTransaction | None: ...

    async def list_pending(self, since: datetime) -> list[SBTCTransaction]:
        """Pending attempts created at or after ``since``, oldest first."""
        ...

    async def update(self, tx: SBTCTransaction) -> None: ...


@runtime_checkable
class WebhookLogRepository(Protocol):
    async def add(self, entry: WebhookLogEntry) -> None: ...

    async def list_for_merchant(
        self,
        merchant_id: str,
        limit: int | None = None,
        offset: int = 0,
        since: datetime | None = None,
    ) -> list[WebhookLogEntry]:
        """Newest first."""
        ...

    async def list_since(self, since: datetime) -> list[WebhookLogEntry]:
        """All entries created at or after ``since``, oldest first."""
        ...


@runtime_checkable
class MerchantDirectory(Protocol):
    async def get_webhook_target(self, merchant_id: str) -> WebhookTarget | None:
        """None when the merchant is unknown or has no webhook URL configured."""
        ...
