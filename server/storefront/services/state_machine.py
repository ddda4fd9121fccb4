from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from storefront.integrations.payment_gateways.base import TransactionStatus
from storefront.models.audit import AuditCategory, AuditLog
from storefront.models.order import FinancialStatus, Order, OrderStatus


ALLOWED_TRANSITIONS: dict[TransactionStatus, tuple[TransactionStatus, ...]] = {
    TransactionStatus.PENDING: (
        TransactionStatus.PROCESSING,
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    ),
    TransactionStatus.PROCESSING: (
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    ),
    TransactionStatus.SUCCESS: (),
    TransactionStatus.FAILED: (),
    TransactionStatus.CANCELLED: (),
}

FINANCIAL_STATUS_FOR: dict[TransactionStatus, FinancialStatus] = {
    TransactionStatus.SUCCESS: FinancialStatus.PAID,
    TransactionStatus.FAILED: FinancialStatus.FAILED,
    TransactionStatus.CANCELLED: FinancialStatus.CANCELLED,
}


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    reason: str | None = None
    changed: bool = False


def _can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    allowed: Iterable[TransactionStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def transition_payment(current: TransactionStatus, target: TransactionStatus) -> TransitionResult:
    if current == target:
        return TransitionResult(succeeded=True)

    if not _can_transition(current, target):
        return TransitionResult(False, f"payment transition {current.value} → {target.value} not permitted")

    return TransitionResult(succeeded=True, changed=True)


def apply_order_outcome(order: Order, target: TransactionStatus, *, now: datetime | None = None) -> None:
    """Reflect a terminal payment outcome on the order."""
    financial_status = FINANCIAL_STATUS_FOR.get(target)
    if financial_status is None:
        return

    order.financial_status = financial_status
    if target is TransactionStatus.SUCCESS:
        order.status = OrderStatus.PROCESSING
        if order.paid_at is None:
            order.paid_at = now or datetime.now(timezone.utc)


def record_transition_audit(
    session: AsyncSession,
    *,
    store_id: str,
    order_id: str | None,
    actor: str,
    previous: TransactionStatus,
    target: TransactionStatus,
    details: dict | None = None,
) -> None:
    entry = AuditLog(
        store_id=store_id,
        order_id=order_id,
        actor=actor,
        action="payment.status.transition",
        category=AuditCategory.STATE_TRANSITION,
        details={"from": previous.value, "to": target.value, **(details or {})},
        critical=False,
    )
    session.add(entry)
