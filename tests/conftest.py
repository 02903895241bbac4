"""Shared test fixtures for all test groups."""

from datetime import UTC, datetime, timedelta

import pytest

from stacksgate.core.exceptions import ChainUnavailable
from stacksgate.integrations.chain import ChainTxStatus, DepositKey
from stacksgate.repositories.memory import (
    InMemoryMerchantDirectory,
    InMemoryPaymentIntentRepository,
    InMemorySBTCTransactionRepository,
    InMemoryWebhookLogRepository,
)
from stacksgate.services.payment_intents import PaymentIntentService


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeChainClient:
    """Scriptable ChainClient.

    ``statuses`` maps a reference to a ChainTxStatus or an exception to raise.
    Unknown references report pending with zero confirmations.
    """

    def __init__(self, broadcast_txid: str | None = None):
        self.statuses: dict[str, ChainTxStatus | Exception] = {}
        self.balances: dict[str, int] = {}
        self.broadcast_txid = broadcast_txid
        self.status_calls: list[str] = []
        self.broadcasts: list[tuple[int, str, str]] = []
        self._keys = 0

    async def get_transaction_status(self, reference: str) -> ChainTxStatus:
        self.status_calls.append(reference)
        result = self.statuses.get(reference)
        if isinstance(result, Exception):
            raise result
        return result or ChainTxStatus(txid=reference, status="pending")

    async def get_token_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def broadcast_deposit(self, amount_sats: int, recipient: str, private_key: str) -> str:
        self.broadcasts.append((amount_sats, recipient, private_key))
        if self.broadcast_txid is None:
            raise ChainUnavailable("No sBTC deposit relay configured")
        return self.broadcast_txid

    def generate_deposit_address(self) -> DepositKey:
        self._keys += 1
        return DepositKey(address=f"ST{self._keys:039d}", private_key=f"{self._keys:064x}01")


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns immediately and records delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def intent_repo():
    return InMemoryPaymentIntentRepository()


@pytest.fixture
def tx_repo():
    return InMemorySBTCTransactionRepository()


@pytest.fixture
def webhook_logs():
    return InMemoryWebhookLogRepository()


@pytest.fixture
def merchants():
    directory = InMemoryMerchantDirectory()
    directory.register("merchant_1", "https://merchant.example/webhooks", secret="whsec_test")
    return directory


@pytest.fixture
def payment_intents(intent_repo, clock):
    """PaymentIntentService without a rate oracle (amount_usd stays as given)."""
    return PaymentIntentService(intent_repo, clock=clock)


@pytest.fixture
def chain():
    return FakeChainClient()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def broadcasting_chain():
    """Chain client whose deposit relay accepts every broadcast."""
    return FakeChainClient(broadcast_txid="0xstx_deposit")
