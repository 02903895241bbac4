"""ChainClient contract and a caching wrapper around any implementation.

Every implementation raises ChainUnavailable for network failures and
malformed responses; callers treat that as "no new information".
"""

from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel

from stacksgate.core.cache import CacheService
from stacksgate.core.exceptions import ChainUnavailable
from stacksgate.schemas.payments import TransactionStatus

logger = structlog.get_logger(__name__)


class ChainTxStatus(BaseModel):
    txid: str
    status: TransactionStatus
    confirmations: int = 0
    block_height: int | None = None
    error: str | None = None


class DepositKey(BaseModel):
    """Ephemeral deposit key. Never persisted by the engine."""

    address: str
    private_key: str  # hex, compressed-key suffix included


@runtime_checkable
class ChainClient(Protocol):
    async def get_transaction_status(self, reference: str) -> ChainTxStatus: ...

    async def get_token_balance(self, address: str) -> int: ...

    async def broadcast_deposit(self, amount_sats: int, recipient: str, private_key: str) -> str: ...

    def generate_deposit_address(self) -> DepositKey: ...


class CachingChainClient:
    """Wrap a ChainClient with short-lived result caching.

    - status: 30s while pending, 300s once confirmed/failed
    - last known status: kept 24h and served when the inner client is unavailable
    - balances: 30s
    """

    def __init__(
        self,
        inner: ChainClient,
        cache: CacheService,
        pending_ttl: float = 30,
        final_ttl: float = 300,
        last_known_ttl: float = 24 * 3600,
        balance_ttl: float = 30,
    ):
        self.inner = inner
        self.cache = cache
        self.pending_ttl = pending_ttl
        self.final_ttl = final_ttl
        self.last_known_ttl = last_known_ttl
        self.balance_ttl = balance_ttl

    async def get_transaction_status(self, reference: str) -> ChainTxStatus:
        cached = await self.cache.get(f"tx_status:{reference}")
        if cached is not None:
            return ChainTxStatus.model_validate(cached)

        try:
            status = await self.inner.get_transaction_status(reference)
        except ChainUnavailable:
            last_known = await self.cache.get(f"tx_status_last:{reference}")
            if last_known is None:
                raise
            logger.warning("chain_status_served_from_last_known", reference=reference)
            return ChainTxStatus.model_validate(last_known)

        ttl = self.pending_ttl if status.status == TransactionStatus.PENDING else self.final_ttl
        payload = status.model_dump(mode="json")
        await self.cache.set(f"tx_status:{reference}", payload, ttl)
        await self.cache.set(f"tx_status_last:{reference}", payload, self.last_known_ttl)
        return status

    async def get_token_balance(self, address: str) -> int:
        cached = await self.cache.get(f"sbtc_balance:{address}")
        if cached is not None:
            return int(cached)

        balance = await self.inner.get_token_balance(address)
        await self.cache.set(f"sbtc_balance:{address}", balance, self.balance_ttl)
        return balance

    async def broadcast_deposit(self, amount_sats: int, recipient: str, private_key: str) -> str:
        return await self.inner.broadcast_deposit(amount_sats, recipient, private_key)

    def generate_deposit_address(self) -> DepositKey:
        return self.inner.generate_deposit_address()
