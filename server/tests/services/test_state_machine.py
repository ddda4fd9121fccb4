from datetime import datetime, timezone
from decimal import Decimal

import pytest

from storefront.integrations.payment_gateways.base import TransactionStatus
from storefront.models.order import FinancialStatus, Order, OrderStatus
from storefront.services.state_machine import apply_order_outcome, transition_payment


def make_order() -> Order:
    return Order(
        store_id="store-1",
        order_number=1001,
        subtotal=Decimal("100"),
        total=Decimal("100"),
        customer_email="dana@example.com",
        status=OrderStatus.PENDING,
        financial_status=FinancialStatus.PENDING,
    )


@pytest.mark.parametrize(
    "current, target",
    [
        (TransactionStatus.PENDING, TransactionStatus.PROCESSING),
        (TransactionStatus.PENDING, TransactionStatus.SUCCESS),
        (TransactionStatus.PENDING, TransactionStatus.FAILED),
        (TransactionStatus.PENDING, TransactionStatus.CANCELLED),
        (TransactionStatus.PROCESSING, TransactionStatus.SUCCESS),
        (TransactionStatus.PROCESSING, TransactionStatus.FAILED),
    ],
)
def test_open_payments_move_forward(current, target):
    result = transition_payment(current, target)
    assert result.succeeded
    assert result.changed


@pytest.mark.parametrize(
    "current, target",
    [
        (TransactionStatus.SUCCESS, TransactionStatus.FAILED),
        (TransactionStatus.FAILED, TransactionStatus.SUCCESS),
        (TransactionStatus.CANCELLED, TransactionStatus.SUCCESS),
        (TransactionStatus.PROCESSING, TransactionStatus.PENDING),
    ],
)
def test_terminal_and_backward_transitions_are_refused(current, target):
    result = transition_payment(current, target)
    assert not result.succeeded
    assert current.value in result.reason


def test_same_state_is_accepted_without_change():
    result = transition_payment(TransactionStatus.SUCCESS, TransactionStatus.SUCCESS)
    assert result.succeeded
    assert not result.changed


def test_success_marks_order_paid_once():
    order = make_order()
    first_paid_at = datetime(2024, 5, 1, tzinfo=timezone.utc)

    apply_order_outcome(order, TransactionStatus.SUCCESS, now=first_paid_at)
    apply_order_outcome(order, TransactionStatus.SUCCESS, now=datetime(2024, 6, 1, tzinfo=timezone.utc))

    assert order.financial_status is FinancialStatus.PAID
    assert order.status is OrderStatus.PROCESSING
    assert order.paid_at == first_paid_at


def test_failure_only_touches_financial_status():
    order = make_order()

    apply_order_outcome(order, TransactionStatus.FAILED)

    assert order.financial_status is FinancialStatus.FAILED
    assert order.status is OrderStatus.PENDING
    assert order.paid_at is None


def test_non_terminal_outcome_is_ignored():
    order = make_order()

    apply_order_outcome(order, TransactionStatus.PROCESSING)

    assert order.financial_status is FinancialStatus.PENDING
