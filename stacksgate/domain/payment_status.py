"""Payment intent status enum and transition validation.

Pure domain logic with no external dependencies.
"""

from dataclasses import dataclass
from enum import StrEnum


class PaymentStatus(StrEnum):
    """Payment intent lifecycle states."""

    REQUIRES_PAYMENT = "requires_payment"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED, PaymentStatus.CANCELED})

# Same-status moves on a non-terminal intent are field updates (e.g. new confirmations).
TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.REQUIRES_PAYMENT: frozenset({
        PaymentStatus.REQUIRES_PAYMENT,
        PaymentStatus.PROCESSING,
        PaymentStatus.CANCELED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELED,
    }),
    PaymentStatus.SUCCEEDED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELED: frozenset(),
}


def is_terminal(status: PaymentStatus | str) -> bool:
    return PaymentStatus(status) in TERMINAL_STATUSES


def event_type_for(status: PaymentStatus | str) -> str:
    """Webhook/audit event type for a status, e.g. ``payment_intent.succeeded``."""
    return f"payment_intent.{PaymentStatus(status).value}"


@dataclass
class TransitionResult:
    """Result of a transition check."""

    allowed: bool
    changed: bool = False
    reason: str = ""


def validate_transition(current: PaymentStatus, target: PaymentStatus) -> TransitionResult:
    """Validate whether ``current -> target`` is allowed.

    Rules:
        - Terminal -> same terminal status: allowed as a no-op (changed=False),
          the caller must not write anything
        - Terminal -> any other status: rejected
        - Non-terminal -> same status: allowed, field update only
        - Otherwise the target must be listed in TRANSITIONS
    """
    if current in TERMINAL_STATUSES:
        if target == current:
            return TransitionResult(True, changed=False, reason="Already in terminal status")
        return TransitionResult(False, reason=f"Payment intent is already {current.value}")

    if target not in TRANSITIONS[current]:
        return TransitionResult(False, reason=f"Cannot transition from {current.value} to {target.value}")

    return TransitionResult(True, changed=target != current)
