"""SQLAlchemy repositories backed by the async session factory."""

from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stacksgate.core.exceptions import InvalidStateError
from stacksgate.db.models import MerchantRow, PaymentEventRow, PaymentIntentRow, SBTCTransactionRow, WebhookLogRow
from stacksgate.domain.payment_status import PaymentStatus
from stacksgate.schemas.payments import PaymentEvent, PaymentIntent, SBTCTransaction, TransactionStatus
from stacksgate.schemas.webhooks import WebhookLogEntry, WebhookTarget


_OPEN_STATUSES = (PaymentStatus.REQUIRES_PAYMENT.value, PaymentStatus.PROCESSING.value)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _intent_from_row(row: PaymentIntentRow) -> PaymentIntent:
    return PaymentIntent(
        id=row.id,
        merchant_id=row.merchant_id,
        amount_sats=row.amount_sats,
        amount_usd=row.amount_usd,
        currency=row.currency,
        description=row.description,
        metadata=dict(row.metadata_ or {}),
        stacks_address=row.stacks_address,
        bitcoin_address=row.bitcoin_address,
        sbtc_tx_id=row.sbtc_tx_id,
        confirmation_count=row.confirmation_count,
        status=PaymentStatus(row.status),
        created_at=_aware(row.created_at),
        expires_at=_aware(row.expires_at),
        updated_at=_aware(row.updated_at),
        version=row.version,
    )


def _intent_columns(intent: PaymentIntent) -> dict:
    return {
        "merchant_id": intent.merchant_id,
        "amount_sats": intent.amount_sats,
        "amount_usd": intent.amount_usd,
        "currency": intent.currency,
        "description": intent.description,
        "metadata_": dict(intent.metadata),
        "stacks_address": intent.stacks_address,
        "bitcoin_address": intent.bitcoin_address,
        "sbtc_tx_id": intent.sbtc_tx_id,
        "confirmation_count": intent.confirmation_count,
        "status": intent.status.value,
        "created_at": intent.created_at,
        "expires_at": intent.expires_at,
        "updated_at": intent.updated_at,
        "version": intent.version,
    }


def _event_row(event: PaymentEvent) -> PaymentEventRow:
    return PaymentEventRow(
        id=event.id,
        payment_intent_id=event.payment_intent_id,
        event_type=event.event_type,
        data=event.model_dump(mode="json")["data"],
        created_at=event.created_at,
    )


def _tx_from_row(row: SBTCTransactionRow) -> SBTCTransaction:
    return SBTCTransaction(
        id=row.id,
        payment_intent_id=row.payment_intent_id,
        bitcoin_txid=row.bitcoin_txid,
        stacks_txid=row.stacks_txid,
        deposit_address=row.deposit_address,
        amount_sats=row.amount_sats,
        status=TransactionStatus(row.status),
        confirmation_count=row.confirmation_count,
        block_height=row.block_height,
        confirmed_at=_aware(row.confirmed_at),
        created_at=_aware(row.created_at),
    )


def _log_from_row(row: WebhookLogRow) -> WebhookLogEntry:
    return WebhookLogEntry(
        id=row.id,
        merchant_id=row.merchant_id,
        payment_intent_id=row.payment_intent_id,
        event_type=row.event_type,
        event_id=row.event_id,
        webhook_url=row.webhook_url,
        request_payload=dict(row.request_payload or {}),
        response_status=row.response_status,
        response_body=row.response_body,
        delivered=row.delivered,
        attempt_number=row.attempt_number,
        created_at=_aware(row.created_at),
    )


class SqlPaymentIntentRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, intent: PaymentIntent, event: PaymentEvent) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(PaymentIntentRow(id=intent.id, **_intent_columns(intent)))
                # Flush the intent first so the event's FK resolves
                await session.flush()
                session.add(_event_row(event))

    async def get(self, intent_id: str) -> PaymentIntent | None:
        async with self.session_factory() as session:
            row = await session.get(PaymentIntentRow, intent_id)
            return _intent_from_row(row) if row else None

    async def list_by_merchant(self, merchant_id: str, limit: int = 50, offset: int = 0) -> list[PaymentIntent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRow)
                .where(PaymentIntentRow.merchant_id == merchant_id)
                .order_by(PaymentIntentRow.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_intent_from_row(row) for row in result.scalars().all()]

    async def list_expired(self, now: datetime) -> list[PaymentIntent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentIntentRow).where(
                    PaymentIntentRow.status.in_(_OPEN_STATUSES),
                    PaymentIntentRow.expires_at < now,
                )
            )
            return [_intent_from_row(row) for row in result.scalars().all()]

    async def save_transition(
        self,
        updated: PaymentIntent,
        expected_version: int,
        event: PaymentEvent | None,
    ) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(PaymentIntentRow)
                    .where(
                        PaymentIntentRow.id == updated.id,
                        PaymentIntentRow.version == expected_version,
                    )
                    .values(**_intent_columns(updated))
                )
                if result.rowcount != 1:
                    return False
                if event is not None:
                    session.add(_event_row(event))
            return True

    async def list_events(self, intent_id: str) -> list[PaymentEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(PaymentEventRow)
                .where(PaymentEventRow.payment_intent_id == intent_id)
                .order_by(PaymentEventRow.created_at.asc())
            )
            return [
                PaymentEvent(
                    id=row.id,
                    payment_intent_id=row.payment_intent_id,
                    event_type=row.event_type,
                    data=dict(row.data or {}),
                    created_at=_aware(row.created_at),
                )
                for row in result.scalars().all()
            ]


class SqlSBTCTransactionRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, tx: SBTCTransaction) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(SBTCTransactionRow.id).where(
                        SBTCTransactionRow.payment_intent_id == tx.payment_intent_id,
                        SBTCTransactionRow.status == TransactionStatus.PENDING.value,
                    )
                )
                if result.first() is not None:
                    raise InvalidStateError(f"Payment intent {tx.payment_intent_id} already has a pending settlement")
                session.add(
                    SBTCTransactionRow(
                        id=tx.id,
                        payment_intent_id=tx.payment_intent_id,
                        bitcoin_txid=tx.bitcoin_txid,
                        stacks_txid=tx.stacks_txid,
                        deposit_address=tx.deposit_address,
                        amount_sats=tx.amount_sats,
                        status=tx.status.value,
                        confirmation_count=tx.confirmation_count,
                        block_height=tx.block_height,
                        confirmed_at=tx.confirmed_at,
                        created_at=tx.created_at,
                    )
                )

    async def get(self, tx_id: str) -> SBTCTransaction | None:
        async with self.session_factory() as session:
            row = await session.get(SBTCTransactionRow, tx_id)
            return _tx_from_row(row) if row else None

    async def get_active_for_intent(self, intent_id: str) -> SBTCTransaction | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SBTCTransactionRow).where(
                    SBTCTransactionRow.payment_intent_id == intent_id,
                    SBTCTransactionRow.status == TransactionStatus.PENDING.value,
                )
            )
            row = result.scalars().first()
            return _tx_from_row(row) if row else None

    async def list_pending(self, since: datetime) -> list[SBTCTransaction]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SBTCTransactionRow)
                .where(
                    SBTCTransactionRow.status == TransactionStatus.PENDING.value,
                    SBTCTransactionRow.created_at >= since,
                )
                .order_by(SBTCTransactionRow.created_at.asc())
            )
            return [_tx_from_row(row) for row in result.scalars().all()]

    async def update(self, tx: SBTCTransaction) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(SBTCTransactionRow)
                    .where(SBTCTransactionRow.id == tx.id)
                    .values(
                        bitcoin_txid=tx.bitcoin_txid,
                        stacks_txid=tx.stacks_txid,
                        status=tx.status.value,
                        confirmation_count=tx.confirmation_count,
                        block_height=tx.block_height,
                        confirmed_at=tx.confirmed_at,
                    )
                )


class SqlWebhookLogRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def add(self, entry: WebhookLogEntry) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    WebhookLogRow(
                        id=entry.id,
                        merchant_id=entry.merchant_id,
                        payment_intent_id=entry.payment_intent_id,
                        event_type=entry.event_type,
                        event_id=entry.event_id,
                        webhook_url=entry.webhook_url,
                        request_payload=entry.model_dump(mode="json")["request_payload"],
                        response_status=entry.response_status,
                        response_body=entry.response_body,
                        delivered=entry.delivered,
                        attempt_number=entry.attempt_number,
                        created_at=entry.created_at,
                    )
                )

    async def list_for_merchant(
        self,
        merchant_id: str,
        limit: int | None = None,
        offset: int = 0,
        since: datetime | None = None,
    ) -> list[WebhookLogEntry]:
        stmt = select(WebhookLogRow).where(WebhookLogRow.merchant_id == merchant_id)
        if since is not None:
            stmt = stmt.where(WebhookLogRow.created_at >= since)
        stmt = stmt.order_by(WebhookLogRow.created_at.desc()).offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_log_from_row(row) for row in result.scalars().all()]

    async def list_since(self, since: datetime) -> list[WebhookLogEntry]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(WebhookLogRow)
                .where(WebhookLogRow.created_at >= since)
                .order_by(WebhookLogRow.created_at.asc())
            )
            return [_log_from_row(row) for row in result.scalars().all()]


class SqlMerchantDirectory:
    """Reads webhook configuration from the merchants table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get_webhook_target(self, merchant_id: str) -> WebhookTarget | None:
        async with self.session_factory() as session:
            row = await session.get(MerchantRow, merchant_id)
            if row is None or not row.webhook_url:
                return None
            return WebhookTarget(merchant_id=row.id, url=row.webhook_url, secret=row.webhook_secret)
