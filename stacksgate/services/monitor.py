"""ConfirmationMonitor — reconciles pending settlements against the chain.

Each cycle loads pending SBTCTransactions inside the lookback window (oldest
first), asks the ChainClient about each one, and drives the owning payment
intent forward. One bad transaction never stops the cycle, and one bad cycle
never stops the loop.
"""

from dataclasses import dataclass
from datetime import timedelta

import structlog

from stacksgate.core.clock import Clock, utc_now
from stacksgate.core.exceptions import ChainUnavailable, ConfigurationError, InvalidStateError
from stacksgate.core.periodic import PeriodicLoop
from stacksgate.domain.payment_status import PaymentStatus
from stacksgate.integrations.chain import ChainClient, ChainTxStatus
from stacksgate.repositories.base import SBTCTransactionRepository
from stacksgate.schemas.payments import SBTCTransaction, TransactionStatus
from stacksgate.services.payment_intents import PaymentIntentService

logger = structlog.get_logger(__name__)


@dataclass
class MonitorCycleSummary:
    checked: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0


class ConfirmationMonitor:
    """Polls the chain for pending deposits on a fixed interval."""

    def __init__(
        self,
        transactions: SBTCTransactionRepository,
        payment_intents: PaymentIntentService,
        chain: ChainClient | None,
        interval_seconds: float = 30.0,
        lookback_hours: float = 24,
        clock: Clock = utc_now,
    ):
        self.transactions = transactions
        self.payment_intents = payment_intents
        self.chain = chain
        self.lookback_hours = lookback_hours
        self.clock = clock
        self._loop = PeriodicLoop("confirmation_monitor", interval_seconds, self.run_cycle)

    @property
    def running(self) -> bool:
        return self._loop.running

    def start(self) -> None:
        if self.chain is None:
            raise ConfigurationError("No chain client configured")
        self._loop.start()

    async def stop(self, timeout: float = 30.0) -> None:
        await self._loop.stop(timeout=timeout)

    async def run_cycle(self) -> MonitorCycleSummary:
        """Check every pending transaction once."""
        if self.chain is None:
            raise ConfigurationError("No chain client configured")

        summary = MonitorCycleSummary()
        since = self.clock() - timedelta(hours=self.lookback_hours)
        pending = await self.transactions.list_pending(since)

        for tx in pending:
            reference = tx.chain_reference
            if not reference:
                summary.skipped += 1
                continue

            summary.checked += 1
            try:
                if await self._reconcile(tx, reference):
                    summary.updated += 1
            except ChainUnavailable as exc:
                summary.errors += 1
                logger.warning("monitor_chain_unavailable", sbtc_transaction_id=tx.id, reference=reference, error=str(exc))
            except InvalidStateError as exc:
                summary.errors += 1
                logger.warning(
                    "monitor_intent_transition_rejected",
                    sbtc_transaction_id=tx.id,
                    payment_intent_id=tx.payment_intent_id,
                    error=str(exc),
                )
            except Exception as exc:
                summary.errors += 1
                logger.error(
                    "monitor_transaction_failed",
                    sbtc_transaction_id=tx.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    exc_info=True,
                )

        logger.info(
            "monitor_cycle_complete",
            pending=len(pending),
            checked=summary.checked,
            updated=summary.updated,
            errors=summary.errors,
        )
        return summary

    async def _reconcile(self, tx: SBTCTransaction, reference: str) -> bool:
        """Apply one chain observation. Returns True if anything was written."""
        status = await self.chain.get_transaction_status(reference)

        if status.status == TransactionStatus.CONFIRMED:
            await self._settle(tx, status, TransactionStatus.CONFIRMED, PaymentStatus.SUCCEEDED)
            logger.info(
                "sbtc_deposit_confirmed",
                payment_intent_id=tx.payment_intent_id,
                reference=reference,
                confirmations=status.confirmations,
            )
            return True

        if status.status == TransactionStatus.FAILED:
            await self._settle(tx, status, TransactionStatus.FAILED, PaymentStatus.FAILED)
            logger.warning(
                "sbtc_deposit_failed",
                payment_intent_id=tx.payment_intent_id,
                reference=reference,
                error=status.error,
            )
            return True

        if status.confirmations > tx.confirmation_count:
            updated_tx = tx.model_copy(
                update={"confirmation_count": status.confirmations, "block_height": status.block_height}
            )
            await self._apply(
                updated_tx,
                PaymentStatus.PROCESSING,
                {"confirmation_count": status.confirmations},
            )
            return True

        return False

    async def _settle(
        self,
        tx: SBTCTransaction,
        status: ChainTxStatus,
        tx_status: TransactionStatus,
        intent_status: PaymentStatus,
    ) -> None:
        settled_tx = tx.model_copy(
            update={
                "status": tx_status,
                "confirmation_count": max(tx.confirmation_count, status.confirmations),
                "block_height": status.block_height,
                "confirmed_at": self.clock() if tx_status == TransactionStatus.CONFIRMED else None,
            }
        )
        await self._apply(
            settled_tx,
            intent_status,
            {"confirmation_count": status.confirmations, "sbtc_tx_id": status.txid},
        )

    async def _apply(self, tx: SBTCTransaction, intent_status: PaymentStatus, fields: dict) -> None:
        """Move the intent first, then persist the transaction row.

        The row stays pending until the intent write lands, so a failed intent
        write is retried by the next cycle. An intent that is already terminal
        still gets its row finalized before the rejection propagates.
        """
        try:
            await self.payment_intents.transition_status(tx.payment_intent_id, intent_status, fields)
        except InvalidStateError:
            await self.transactions.update(tx)
            raise
        await self.transactions.update(tx)
