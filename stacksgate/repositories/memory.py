"""In-memory repositories.

Used by the test suite and by ``storage_backend="memory"`` deployments. Entities
are deep-copied on the way in and out so callers never alias stored state.
"""

import asyncio
from datetime import datetime

from stacksgate.core.exceptions import InvalidStateError
from stacksgate.domain.payment_status import PaymentStatus
from stacksgate.schemas.payments import PaymentEvent, PaymentIntent, SBTCTransaction, TransactionStatus
from stacksgate.schemas.webhooks import WebhookLogEntry, WebhookTarget


_OPEN_STATUSES = (PaymentStatus.REQUIRES_PAYMENT, PaymentStatus.PROCESSING)


class InMemoryPaymentIntentRepository:
    """Dict-backed intents with a single lock around every compare-and-swap."""

    def __init__(self) -> None:
        self._intents: dict[str, PaymentIntent] = {}
        self._events: dict[str, list[PaymentEvent]] = {}
        self._lock = asyncio.Lock()

    async def add(self, intent: PaymentIntent, event: PaymentEvent) -> None:
        async with self._lock:
            if intent.id in self._intents:
                raise InvalidStateError(f"Payment intent {intent.id} already exists")
            self._intents[intent.id] = intent.model_copy(deep=True)
            self._events[intent.id] = [event.model_copy(deep=True)]

    async def get(self, intent_id: str) -> PaymentIntent | None:
        intent = self._intents.get(intent_id)
        return intent.model_copy(deep=True) if intent else None

    async def list_by_merchant(self, merchant_id: str, limit: int = 50, offset: int = 0) -> list[PaymentIntent]:
        matching = [i for i in self._intents.values() if i.merchant_id == merchant_id]
        matching.sort(key=lambda i: i.created_at, reverse=True)
        return [i.model_copy(deep=True) for i in matching[offset : offset + limit]]

    async def list_expired(self, now: datetime) -> list[PaymentIntent]:
        return [
            i.model_copy(deep=True)
            for i in self._intents.values()
            if i.status in _OPEN_STATUSES and i.expires_at < now
        ]

    async def save_transition(
        self,
        updated: PaymentIntent,
        expected_version: int,
        event: PaymentEvent | None,
    ) -> bool:
        async with self._lock:
            current = self._intents.get(updated.id)
            if current is None or current.version != expected_version:
                return False
            self._intents[updated.id] = updated.model_copy(deep=True)
            if event is not None:
                self._events.setdefault(updated.id, []).append(event.model_copy(deep=True))
            return True

    async def list_events(self, intent_id: str) -> list[PaymentEvent]:
        return [e.model_copy(deep=True) for e in self._events.get(intent_id, [])]


class InMemorySBTCTransactionRepository:
    def __init__(self) -> None:
        self._txs: dict[str, SBTCTransaction] = {}
        self._lock = asyncio.Lock()

    async def add(self, tx: SBTCTransaction) -> None:
        async with self._lock:
            for existing in self._txs.values():
                if existing.payment_intent_id == tx.payment_intent_id and existing.status == TransactionStatus.PENDING:
                    raise InvalidStateError(f"Payment intent {tx.payment_intent_id} already has a pending settlement")
            self._txs[tx.id] = tx.model_copy(deep=True)

    async def get(self, tx_id: str) -> SBTCTransaction | None:
        tx = self._txs.get(tx_id)
        return tx.model_copy(deep=True) if tx else None

    async def get_active_for_intent(self, intent_id: str) -> SBTCTransaction | None:
        for tx in self._txs.values():
            if tx.payment_intent_id == intent_id and tx.status == TransactionStatus.PENDING:
                return tx.model_copy(deep=True)
        return None

    async def list_pending(self, since: datetime) -> list[SBTCTransaction]:
        pending = [
            tx for tx in self._txs.values() if tx.status == TransactionStatus.PENDING and tx.created_at >= since
        ]
        pending.sort(key=lambda tx: tx.created_at)
        return [tx.model_copy(deep=True) for tx in pending]

    async def update(self, tx: SBTCTransaction) -> None:
        async with self._lock:
            self._txs[tx.id] = tx.model_copy(deep=True)


class InMemoryWebhookLogRepository:
    def __init__(self) -> None:
        self._entries: list[WebhookLogEntry] = []

    @property
    def entries(self) -> list[WebhookLogEntry]:
        return list(self._entries)

    async def add(self, entry: WebhookLogEntry) -> None:
        self._entries.append(entry.model_copy(deep=True))

    async def list_for_merchant(
        self,
        merchant_id: str,
        limit: int | None = None,
        offset: int = 0,
        since: datetime | None = None,
    ) -> list[WebhookLogEntry]:
        matching = [
            e
            for e in self._entries
            if e.merchant_id == merchant_id and (since is None or e.created_at >= since)
        ]
        # Stable sort keeps insertion order for entries sharing a timestamp
        matching = sorted(reversed(matching), key=lambda e: e.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return [e.model_copy(deep=True) for e in matching[offset:end]]

    async def list_since(self, since: datetime) -> list[WebhookLogEntry]:
        matching = [e for e in self._entries if e.created_at >= since]
        matching.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in matching]


class InMemoryMerchantDirectory:
    """Static merchant → webhook target mapping."""

    def __init__(self, targets: dict[str, WebhookTarget] | None = None) -> None:
        self._targets = dict(targets or {})

    def register(self, merchant_id: str, url: str, secret: str | None = None) -> WebhookTarget:
        target = WebhookTarget(merchant_id=merchant_id, url=url, secret=secret)
        self._targets[merchant_id] = target
        return target

    async def get_webhook_target(self, merchant_id: str) -> WebhookTarget | None:
        return self._targets.get(merchant_id)
