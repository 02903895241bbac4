"""Tests for the SQLAlchemy repositories."""

from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from stacksgate.core.exceptions import InvalidStateError
from stacksgate.db.models import MerchantRow
from stacksgate.domain.payment_status import PaymentStatus
from stacksgate.repositories.base import (
    MerchantDirectory,
    PaymentIntentRepository,
    SBTCTransactionRepository,
    WebhookLogRepository,
)
from stacksgate.repositories.sql import (
    SqlMerchantDirectory,
    SqlPaymentIntentRepository,
    SqlSBTCTransactionRepository,
    SqlWebhookLogRepository,
)
from stacksgate.schemas.payments import PaymentEvent, PaymentIntent, SBTCTransaction, TransactionStatus
from stacksgate.schemas.webhooks import WebhookLogEntry
from stacksgate.services.payment_intents import PaymentIntentService
from stacksgate.services.webhooks import WebhookDispatcher

pytestmark = pytest.mark.integration


@pytest.fixture
def intents(session_factory):
    return SqlPaymentIntentRepository(session_factory)


@pytest.fixture
def transactions(session_factory):
    return SqlSBTCTransactionRepository(session_factory)


@pytest.fixture
def logs(session_factory):
    return SqlWebhookLogRepository(session_factory)


def make_intent(clock, **fields) -> PaymentIntent:
    values = {
        "merchant_id": "merchant_1",
        "amount_sats": 150_000,
        "amount_usd": Decimal("97.50"),
        "metadata": {"order": "42"},
        "created_at": clock(),
        "updated_at": clock(),
        "expires_at": clock() + timedelta(hours=24),
    }
    values.update(fields)
    return PaymentIntent(**values)


def created_event(intent: PaymentIntent) -> PaymentEvent:
    return PaymentEvent(
        payment_intent_id=intent.id,
        event_type="payment_intent.created",
        data={"amount_sats": intent.amount_sats},
        created_at=intent.created_at,
    )


def test_sql_repositories_satisfy_protocols(session_factory):
    assert isinstance(SqlPaymentIntentRepository(session_factory), PaymentIntentRepository)
    assert isinstance(SqlSBTCTransactionRepository(session_factory), SBTCTransactionRepository)
    assert isinstance(SqlWebhookLogRepository(session_factory), WebhookLogRepository)
    assert isinstance(SqlMerchantDirectory(session_factory), MerchantDirectory)


# ============================================================================
# payment intents
# ============================================================================


async def test_intent_round_trip(intents, clock):
    intent = make_intent(clock)
    await intents.add(intent, created_event(intent))

    stored = await intents.get(intent.id)

    assert stored == intent
    assert stored.created_at.tzinfo is not None
    assert await intents.get("pi_missing") is None


async def test_save_transition_compares_version(intents, clock):
    intent = make_intent(clock)
    await intents.add(intent, created_event(intent))
    clock.advance(seconds=1)
    updated = intent.model_copy(update={"status": PaymentStatus.PROCESSING, "version": 2})
    event = PaymentEvent(payment_intent_id=intent.id, event_type="payment_intent.processing", created_at=clock())

    assert await intents.save_transition(updated, expected_version=1, event=event) is True
    assert await intents.save_transition(updated, expected_version=1, event=event) is False

    stored = await intents.get(intent.id)
    assert stored.status == PaymentStatus.PROCESSING
    assert stored.version == 2
    events = await intents.list_events(intent.id)
    assert [e.event_type for e in events] == ["payment_intent.created", "payment_intent.processing"]


async def test_list_by_merchant_and_expired(intents, clock):
    old = make_intent(clock, expires_at=clock() + timedelta(hours=1))
    await intents.add(old, created_event(old))
    clock.advance(minutes=5)
    new = make_intent(clock)
    await intents.add(new, created_event(new))
    other = make_intent(clock, merchant_id="merchant_2")
    await intents.add(other, created_event(other))

    listed = await intents.list_by_merchant("merchant_1")
    expired = await intents.list_expired(clock() + timedelta(hours=2))

    assert [i.id for i in listed] == [new.id, old.id]
    assert [i.id for i in expired] == [old.id]


async def test_service_lifecycle_over_sql(intents, clock):
    service = PaymentIntentService(intents, clock=clock)

    intent = await service.create("merchant_1", 1000, metadata={"order": "1"})
    await service.transition_status(intent.id, PaymentStatus.PROCESSING, {"confirmation_count": 1})
    done = await service.transition_status(intent.id, PaymentStatus.SUCCEEDED, {"sbtc_tx_id": "0xabc"})

    assert done.status == PaymentStatus.SUCCEEDED
    assert done.sbtc_tx_id == "0xabc"
    with pytest.raises(InvalidStateError):
        await service.transition_status(intent.id, PaymentStatus.FAILED)
    assert len(await service.get_events(intent.id)) == 3


# ============================================================================
# sBTC transactions
# ============================================================================


async def test_single_pending_transaction_per_intent(intents, transactions, clock):
    intent = make_intent(clock)
    await intents.add(intent, created_event(intent))
    tx = SBTCTransaction(
        payment_intent_id=intent.id, stacks_txid="0x1", deposit_address="ST1", amount_sats=1, created_at=clock()
    )
    await transactions.add(tx)

    with pytest.raises(InvalidStateError):
        await transactions.add(
            SBTCTransaction(payment_intent_id=intent.id, deposit_address="ST2", amount_sats=1, created_at=clock())
        )

    assert (await transactions.get_active_for_intent(intent.id)).id == tx.id


async def test_pending_listing_and_update(intents, transactions, clock):
    first_intent = make_intent(clock)
    await intents.add(first_intent, created_event(first_intent))
    second_intent = make_intent(clock)
    await intents.add(second_intent, created_event(second_intent))

    first = SBTCTransaction(
        payment_intent_id=first_intent.id, stacks_txid="0x1", deposit_address="ST1", amount_sats=1, created_at=clock()
    )
    await transactions.add(first)
    clock.advance(minutes=1)
    second = SBTCTransaction(
        payment_intent_id=second_intent.id, stacks_txid="0x2", deposit_address="ST2", amount_sats=1, created_at=clock()
    )
    await transactions.add(second)

    since = clock() - timedelta(hours=1)
    assert [tx.id for tx in await transactions.list_pending(since)] == [first.id, second.id]

    await transactions.update(
        first.model_copy(update={"status": TransactionStatus.CONFIRMED, "confirmed_at": clock(), "block_height": 9})
    )

    assert [tx.id for tx in await transactions.list_pending(since)] == [second.id]
    stored = await transactions.get(first.id)
    assert stored.status == TransactionStatus.CONFIRMED
    assert stored.block_height == 9
    assert stored.confirmed_at == clock()


# ============================================================================
# webhook logs and merchants
# ============================================================================


async def test_webhook_log_ordering(logs, clock):
    for minutes_ago, event_id in [(30, "evt_old"), (1, "evt_new")]:
        await logs.add(
            WebhookLogEntry(
                merchant_id="merchant_1",
                event_type="payment_intent.succeeded",
                event_id=event_id,
                webhook_url="https://merchant.example/webhooks",
                request_payload={"id": event_id, "data": {"object": {"amount": 0.0015}}},
                created_at=clock() - timedelta(minutes=minutes_ago),
            )
        )

    newest_first = await logs.list_for_merchant("merchant_1")
    oldest_first = await logs.list_since(clock() - timedelta(hours=1))
    recent = await logs.list_for_merchant("merchant_1", since=clock() - timedelta(minutes=5))

    assert [e.event_id for e in newest_first] == ["evt_new", "evt_old"]
    assert [e.event_id for e in oldest_first] == ["evt_old", "evt_new"]
    assert [e.event_id for e in recent] == ["evt_new"]
    assert newest_first[0].request_payload["data"]["object"]["amount"] == 0.0015


async def test_merchant_directory_reads_webhook_config(session_factory):
    async with session_factory() as session:
        async with session.begin():
            session.add(MerchantRow(id="merchant_1", webhook_url="https://m.example/hook", webhook_secret="whsec_1"))
            session.add(MerchantRow(id="merchant_2", webhook_url=None))

    directory = SqlMerchantDirectory(session_factory)

    target = await directory.get_webhook_target("merchant_1")
    assert (target.url, target.secret) == ("https://m.example/hook", "whsec_1")
    assert await directory.get_webhook_target("merchant_2") is None
    assert await directory.get_webhook_target("merchant_missing") is None


async def test_dispatcher_logs_attempts_to_sql(session_factory, logs, clock, recording_sleep):
    async with session_factory() as session:
        async with session.begin():
            session.add(MerchantRow(id="merchant_1", webhook_url="https://m.example/hook", webhook_secret="whsec_1"))

    dispatcher = WebhookDispatcher(
        logs,
        SqlMerchantDirectory(session_factory),
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        sleep=recording_sleep,
        clock=clock,
    )

    await dispatcher.send_test_webhook("merchant_1")
    await dispatcher.drain()

    entries = await logs.list_for_merchant("merchant_1")
    assert sorted(e.attempt_number for e in entries) == [1, 2, 3]
    stats = await dispatcher.get_stats("merchant_1")
    assert stats.failed_webhooks == 3
