"""PaymentIntentService — lifecycle of a payment intent.

Every change goes through ``transition_status``: read the current intent,
validate the move with the pure rules in ``domain.payment_status``, then write
the new version plus its audit event with a compare-and-swap. A lost race is
retried against the fresh state a bounded number of times.

Status listeners are called synchronously after a real status change and must
not block; the settlement coordinator uses one to enqueue webhook jobs.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import structlog

from stacksgate.core.clock import Clock, unix_seconds, utc_now
from stacksgate.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from stacksgate.domain.payment_status import PaymentStatus, event_type_for, is_terminal, validate_transition
from stacksgate.repositories.base import PaymentIntentRepository
from stacksgate.schemas.payments import SATS_PER_BTC, PaymentEvent, PaymentIntent

logger = structlog.get_logger(__name__)

StatusListener = Callable[[PaymentIntent, PaymentStatus], None]

DEFAULT_EXPIRY_HOURS = 24
MAX_EXPIRY_HOURS = 720  # 30 days
MAX_CAS_ATTEMPTS = 5

SET_ONCE_FIELDS = ("stacks_address", "bitcoin_address")
ALLOWED_EXTRA_FIELDS = frozenset({"confirmation_count", "sbtc_tx_id", "metadata", *SET_ONCE_FIELDS})


def _validate_metadata(metadata: Any) -> dict[str, str]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()
    ):
        raise ValidationError("metadata must be a map of string keys to string values")
    return dict(metadata)


class PaymentIntentService:
    """Service layer for payment intent operations."""

    def __init__(
        self,
        repository: PaymentIntentRepository,
        rate_oracle=None,
        clock: Clock = utc_now,
        default_expiry_hours: float = DEFAULT_EXPIRY_HOURS,
    ):
        """Initialize with dependency injection.

        Args:
            repository: Storage for intents and their events
            rate_oracle: Optional RateOracle used to derive amount_usd at creation
            clock: Time source (for deterministic testing)
            default_expiry_hours: Horizon used when create() is not given one
        """
        self.repository = repository
        self.rate_oracle = rate_oracle
        self.clock = clock
        self.default_expiry_hours = default_expiry_hours
        self._listeners: list[StatusListener] = []

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def create(
        self,
        merchant_id: str,
        amount_sats: int,
        description: str | None = None,
        metadata: dict[str, str] | None = None,
        expires_in_hours: float | None = None,
        amount_usd: Decimal | None = None,
    ) -> PaymentIntent:
        """Create a new intent in ``requires_payment``.

        Raises:
            ValidationError: amount not a positive int, bad metadata, or expiry
                horizon outside (0, 720] hours
        """
        if not merchant_id:
            raise ValidationError("merchant_id is required")
        if isinstance(amount_sats, bool) or not isinstance(amount_sats, int) or amount_sats <= 0:
            raise ValidationError("amount_sats must be a positive integer")

        clean_metadata = _validate_metadata(metadata)

        hours = self.default_expiry_hours if expires_in_hours is None else expires_in_hours
        if not 0 < hours <= MAX_EXPIRY_HOURS:
            raise ValidationError(f"expires_in_hours must be in (0, {MAX_EXPIRY_HOURS}]")

        if amount_usd is None and self.rate_oracle is not None:
            amount_usd = await self._derive_amount_usd(amount_sats)

        now = self.clock()
        intent = PaymentIntent(
            merchant_id=merchant_id,
            amount_sats=amount_sats,
            amount_usd=amount_usd,
            description=description,
            metadata=clean_metadata,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=hours),
        )
        event = PaymentEvent(
            payment_intent_id=intent.id,
            event_type="payment_intent.created",
            data={
                "merchant_id": merchant_id,
                "amount_sats": amount_sats,
                "amount_usd": str(amount_usd) if amount_usd is not None else None,
            },
            created_at=now,
        )
        await self.repository.add(intent, event)

        logger.info(
            "payment_intent_created",
            payment_intent_id=intent.id,
            merchant_id=merchant_id,
            amount_sats=amount_sats,
        )
        return intent

    async def _derive_amount_usd(self, amount_sats: int) -> Decimal | None:
        try:
            conversion = await self.rate_oracle.convert(Decimal(amount_sats) / SATS_PER_BTC, "sbtc", "usd")
        except ValidationError:
            # Outside the convertible range; the fiat amount is informational only
            return None
        return conversion.converted

    async def find_by_id(self, intent_id: str) -> PaymentIntent | None:
        return await self.repository.get(intent_id)

    async def get(self, intent_id: str) -> PaymentIntent:
        intent = await self.repository.get(intent_id)
        if intent is None:
            raise NotFoundError("PaymentIntent", intent_id)
        return intent

    async def find_by_merchant(self, merchant_id: str, limit: int = 50, offset: int = 0) -> list[PaymentIntent]:
        return await self.repository.list_by_merchant(merchant_id, limit=limit, offset=offset)

    async def get_events(self, intent_id: str) -> list[PaymentEvent]:
        return await self.repository.list_events(intent_id)

    async def find_expired(self, now: datetime | None = None) -> list[PaymentIntent]:
        return await self.repository.list_expired(now or self.clock())

    async def transition_status(
        self,
        intent_id: str,
        new_status: PaymentStatus | str,
        extra_fields: dict[str, Any] | None = None,
    ) -> PaymentIntent:
        """Move an intent to ``new_status`` and apply ``extra_fields`` atomically.

        Returns the stored intent after the write (or unchanged, for a terminal
        same-status no-op).

        Raises:
            NotFoundError: intent does not exist
            InvalidStateError: transition not allowed, a set-once address would
                change, or the compare-and-swap kept losing
            ValidationError: unknown status or extra field
        """
        try:
            target = PaymentStatus(new_status)
        except ValueError as exc:
            raise ValidationError(f"Unknown payment status: {new_status}") from exc

        extra = dict(extra_fields or {})
        unknown = set(extra) - ALLOWED_EXTRA_FIELDS
        if unknown:
            raise ValidationError(f"Fields not updatable on a transition: {', '.join(sorted(unknown))}")
        if "metadata" in extra:
            extra["metadata"] = _validate_metadata(extra["metadata"])

        for _ in range(MAX_CAS_ATTEMPTS):
            current = await self.get(intent_id)

            result = validate_transition(current.status, target)
            if not result.allowed:
                raise InvalidStateError(result.reason)
            if is_terminal(current.status):
                # Same terminal status: nothing to write, nothing to notify
                return current

            updated, applied = self._apply_fields(current, target, extra)
            event = PaymentEvent(
                payment_intent_id=intent_id,
                event_type=event_type_for(target),
                data={"previous_status": current.status.value, "new_status": target.value, **applied},
                created_at=updated.updated_at,
            )

            if await self.repository.save_transition(updated, current.version, event):
                break

            logger.debug("payment_intent_cas_conflict", payment_intent_id=intent_id, version=current.version)
        else:
            raise InvalidStateError(f"Payment intent {intent_id} is being modified concurrently")

        logger.info(
            "payment_intent_status_updated",
            payment_intent_id=intent_id,
            previous_status=current.status.value,
            new_status=target.value,
        )

        if result.changed:
            self._notify(updated, current.status)
        return updated

    def _apply_fields(
        self,
        current: PaymentIntent,
        target: PaymentStatus,
        extra: dict[str, Any],
    ) -> tuple[PaymentIntent, dict[str, Any]]:
        changes: dict[str, Any] = {}

        for field in SET_ONCE_FIELDS:
            if field in extra and extra[field] is not None:
                existing = getattr(current, field)
                if existing is not None and existing != extra[field]:
                    raise InvalidStateError(f"{field} is already set on payment intent {current.id}")
                changes[field] = extra[field]

        if extra.get("sbtc_tx_id") is not None:
            changes["sbtc_tx_id"] = extra["sbtc_tx_id"]

        if "confirmation_count" in extra:
            changes["confirmation_count"] = max(current.confirmation_count, int(extra["confirmation_count"]))

        if extra.get("metadata"):
            changes["metadata"] = {**current.metadata, **extra["metadata"]}

        updated = current.model_copy(
            update={
                **changes,
                "status": target,
                "updated_at": self.clock(),
                "version": current.version + 1,
            }
        )
        return updated, changes

    def _notify(self, intent: PaymentIntent, previous: PaymentStatus) -> None:
        for listener in self._listeners:
            try:
                listener(intent, previous)
            except Exception as exc:
                logger.error(
                    "payment_intent_listener_failed",
                    payment_intent_id=intent.id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

    async def cancel(self, intent_id: str, reason: str | None = None) -> PaymentIntent:
        """Cancel a non-terminal intent.

        Raises:
            NotFoundError: intent does not exist
            InvalidStateError: intent is already terminal
        """
        current = await self.get(intent_id)
        if is_terminal(current.status):
            raise InvalidStateError(f"Payment intent is already {current.status.value}")

        extra = {"metadata": {"cancel_reason": reason}} if reason else None
        return await self.transition_status(intent_id, PaymentStatus.CANCELED, extra)

    async def update(
        self,
        intent_id: str,
        description: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> PaymentIntent:
        """Edit description/metadata while the intent still awaits payment."""
        clean_metadata = _validate_metadata(metadata) if metadata is not None else None

        for _ in range(MAX_CAS_ATTEMPTS):
            current = await self.get(intent_id)
            if current.status != PaymentStatus.REQUIRES_PAYMENT:
                raise InvalidStateError(f"Cannot update a payment intent in status {current.status.value}")

            changes: dict[str, Any] = {}
            if description is not None:
                changes["description"] = description
            if clean_metadata is not None:
                changes["metadata"] = {**current.metadata, **clean_metadata}
            if not changes:
                return current

            updated = current.model_copy(
                update={**changes, "updated_at": self.clock(), "version": current.version + 1}
            )
            event = PaymentEvent(
                payment_intent_id=intent_id,
                event_type="payment_intent.updated",
                data=changes,
                created_at=updated.updated_at,
            )
            if await self.repository.save_transition(updated, current.version, event):
                logger.info("payment_intent_updated", payment_intent_id=intent_id, fields=sorted(changes))
                return updated

        raise InvalidStateError(f"Payment intent {intent_id} is being modified concurrently")

    @staticmethod
    def to_snapshot(intent: PaymentIntent) -> dict[str, Any]:
        """External representation used in webhook payloads and API responses."""
        return {
            "id": intent.id,
            "object": "payment_intent",
            "amount": intent.amount_sats / SATS_PER_BTC,
            "amount_sats": intent.amount_sats,
            "amount_usd": float(intent.amount_usd) if intent.amount_usd is not None else None,
            "currency": intent.currency,
            "status": intent.status.value,
            "description": intent.description,
            "metadata": dict(intent.metadata),
            "stacks_address": intent.stacks_address,
            "bitcoin_address": intent.bitcoin_address,
            "sbtc_tx_id": intent.sbtc_tx_id,
            "confirmation_count": intent.confirmation_count,
            "created": unix_seconds(intent.created_at),
            "expires_at": unix_seconds(intent.expires_at),
        }
