"""SettlementCoordinator — wires intents, chain, monitor, webhooks and rates.

Owns the background subsystems:
- WebhookDispatcher workers
- ConfirmationMonitor loop
- Rate refresh loop
- Webhook batch retry sweep

A ConfigurationError while starting one subsystem disables that subsystem
only; the others keep running.
"""

import structlog

from stacksgate.core.exceptions import ChainUnavailable, ConfigurationError, InvalidStateError
from stacksgate.core.periodic import PeriodicLoop
from stacksgate.domain.payment_status import PaymentStatus
from stacksgate.integrations.chain import ChainClient
from stacksgate.repositories.base import SBTCTransactionRepository
from stacksgate.schemas.payments import PaymentIntent, SBTCTransaction
from stacksgate.services.monitor import ConfirmationMonitor
from stacksgate.services.payment_intents import PaymentIntentService
from stacksgate.services.rates import RateOracle
from stacksgate.services.webhooks import WebhookDispatcher

logger = structlog.get_logger(__name__)


class SettlementCoordinator:
    """Entry point for deposits and owner of the background loops."""

    def __init__(
        self,
        payment_intents: PaymentIntentService,
        transactions: SBTCTransactionRepository,
        chain: ChainClient | None,
        dispatcher: WebhookDispatcher,
        monitor: ConfirmationMonitor,
        rate_oracle: RateOracle | None = None,
        rate_refresh_interval: float = 60.0,
        retry_sweep_interval: float = 0,
    ):
        self.payment_intents = payment_intents
        self.transactions = transactions
        self.chain = chain
        self.dispatcher = dispatcher
        self.monitor = monitor
        self.rate_oracle = rate_oracle
        self._rate_loop = (
            PeriodicLoop("rate_refresh", rate_refresh_interval, rate_oracle.refresh) if rate_oracle else None
        )
        self._retry_loop = None
        if retry_sweep_interval > 0:
            self._retry_loop = PeriodicLoop(
                "webhook_retry_sweep",
                retry_sweep_interval,
                dispatcher.retry_failed_webhooks,
                run_immediately=False,
            )
        self.disabled: dict[str, str] = {}

        payment_intents.add_status_listener(self._on_status_change)

    def _on_status_change(self, intent: PaymentIntent, previous: PaymentStatus) -> None:
        # Listener runs inline with the transition; submit never blocks
        self.dispatcher.notify_payment_intent(intent)

    async def process_deposit_request(
        self,
        intent_id: str,
        recipient_address: str,
        amount_sats: int | None = None,
        bitcoin_txid: str | None = None,
    ) -> PaymentIntent:
        """Start settling an intent: allocate a deposit key, broadcast, record, transition.

        Falls back to monitoring mode when the deposit cannot be broadcast; the
        monitor then picks the deposit up by ``bitcoin_txid`` once observed.

        Raises:
            NotFoundError: intent does not exist
            InvalidStateError: intent is not awaiting payment, or already settling
            ConfigurationError: no chain client is configured
        """
        if self.chain is None:
            raise ConfigurationError("No chain client configured")

        intent = await self.payment_intents.get(intent_id)
        if intent.status != PaymentStatus.REQUIRES_PAYMENT:
            raise InvalidStateError(f"Cannot process a deposit for a payment intent in status {intent.status.value}")

        amount = amount_sats or intent.amount_sats
        deposit_key = self.chain.generate_deposit_address()

        stacks_txid = None
        try:
            stacks_txid = await self.chain.broadcast_deposit(amount, recipient_address, deposit_key.private_key)
        except ChainUnavailable as exc:
            logger.warning(
                "sbtc_deposit_monitoring_mode",
                payment_intent_id=intent_id,
                reason=str(exc),
            )

        await self.transactions.add(
            SBTCTransaction(
                payment_intent_id=intent_id,
                bitcoin_txid=bitcoin_txid,
                stacks_txid=stacks_txid,
                deposit_address=deposit_key.address,
                amount_sats=amount,
            )
        )

        extra = {"stacks_address": recipient_address, "bitcoin_address": deposit_key.address}
        if stacks_txid or bitcoin_txid:
            extra["sbtc_tx_id"] = stacks_txid or bitcoin_txid

        updated = await self.payment_intents.transition_status(intent_id, PaymentStatus.PROCESSING, extra)
        logger.info(
            "sbtc_deposit_processing",
            payment_intent_id=intent_id,
            deposit_address=deposit_key.address,
            broadcast=stacks_txid is not None,
        )
        return updated

    def start(self) -> None:
        """Arm every background subsystem, isolating configuration failures."""
        subsystems = [("webhook_dispatcher", self.dispatcher.start), ("confirmation_monitor", self.monitor.start)]
        if self._rate_loop is not None:
            subsystems.append(("rate_refresh", self._rate_loop.start))
        if self._retry_loop is not None:
            subsystems.append(("webhook_retry_sweep", self._retry_loop.start))

        for name, start in subsystems:
            try:
                start()
            except ConfigurationError as exc:
                self.disabled[name] = str(exc)
                logger.error("subsystem_disabled", subsystem=name, reason=str(exc))

        logger.info("settlement_coordinator_started", disabled=sorted(self.disabled))

    async def stop(self, timeout: float = 30.0) -> None:
        """Let in-flight cycles finish, then cancel. Loops stop before the dispatcher drains."""
        await self.monitor.stop(timeout=timeout)
        if self._rate_loop is not None:
            await self._rate_loop.stop(timeout=timeout)
        if self._retry_loop is not None:
            await self._retry_loop.stop(timeout=timeout)
        await self.dispatcher.stop(timeout=timeout)
        logger.info("settlement_coordinator_stopped")
