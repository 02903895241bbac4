"""Tests for payment intent status transition rules."""

import pytest

from stacksgate.domain.payment_status import (
    TERMINAL_STATUSES,
    PaymentStatus,
    event_type_for,
    is_terminal,
    validate_transition,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "current,target",
    [
        (PaymentStatus.REQUIRES_PAYMENT, PaymentStatus.PROCESSING),
        (PaymentStatus.REQUIRES_PAYMENT, PaymentStatus.CANCELED),
        (PaymentStatus.PROCESSING, PaymentStatus.SUCCEEDED),
        (PaymentStatus.PROCESSING, PaymentStatus.FAILED),
        (PaymentStatus.PROCESSING, PaymentStatus.CANCELED),
    ],
)
def test_forward_transitions_allowed_and_change_status(current, target):
    result = validate_transition(current, target)
    assert result.allowed is True
    assert result.changed is True


def test_requires_payment_cannot_jump_to_succeeded():
    result = validate_transition(PaymentStatus.REQUIRES_PAYMENT, PaymentStatus.SUCCEEDED)
    assert result.allowed is False
    assert "requires_payment" in result.reason


def test_processing_cannot_return_to_requires_payment():
    assert validate_transition(PaymentStatus.PROCESSING, PaymentStatus.REQUIRES_PAYMENT).allowed is False


def test_same_status_on_non_terminal_is_field_update():
    result = validate_transition(PaymentStatus.PROCESSING, PaymentStatus.PROCESSING)
    assert result.allowed is True
    assert result.changed is False


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES))
def test_terminal_same_status_is_noop(terminal):
    result = validate_transition(terminal, terminal)
    assert result.allowed is True
    assert result.changed is False


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES))
@pytest.mark.parametrize("target", list(PaymentStatus))
def test_terminal_never_moves_to_another_status(terminal, target):
    if target == terminal:
        return
    assert validate_transition(terminal, target).allowed is False


def test_is_terminal_accepts_strings():
    assert is_terminal("succeeded") is True
    assert is_terminal("processing") is False


def test_event_type_for_status():
    assert event_type_for(PaymentStatus.SUCCEEDED) == "payment_intent.succeeded"
    assert event_type_for("canceled") == "payment_intent.canceled"
