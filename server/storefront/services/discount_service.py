from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.models.discount import Discount, DiscountType

logger = get_logger(__name__)

CENTS = Decimal("0.01")


class DiscountRejected(Exception):
    def __init__(self, code: str, reason: str) -> None:
        super().__init__(reason)
        self.code = code
        self.reason = reason


@dataclass(slots=True)
class AppliedDiscount:
    discount: Discount
    amount: Decimal


def normalize_code(code: str) -> str:
    return code.strip().upper()


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def compute_discount_amount(discount: Discount, subtotal: Decimal) -> Decimal:
    if discount.type is DiscountType.PERCENTAGE:
        amount = subtotal * discount.value / Decimal(100)
    else:
        amount = discount.value
    return min(amount, subtotal).quantize(CENTS, rounding=ROUND_HALF_UP)


async def get_discount(session: AsyncSession, store_id: str, code: str) -> Discount | None:
    result = await session.execute(
        select(Discount).where(Discount.store_id == store_id, Discount.code == normalize_code(code))
    )
    return result.scalars().first()


async def validate_discount(
    session: AsyncSession,
    store_id: str,
    code: str,
    subtotal: Decimal,
    *,
    now: datetime | None = None,
) -> AppliedDiscount:
    """
    Re-validate a coupon against its live record.

    Raises:
        DiscountRejected: If the code is unknown, inactive, outside its date
            window, out of uses, or the subtotal is below its minimum
    """
    now = now or datetime.now(timezone.utc)
    discount = await get_discount(session, store_id, code)
    if discount is None:
        raise DiscountRejected("coupon_invalid", "not_found")
    if not discount.is_active:
        raise DiscountRejected("coupon_invalid", "inactive")
    if discount.starts_at is not None and now < _as_utc(discount.starts_at):
        raise DiscountRejected("coupon_invalid", "not_started")
    if discount.ends_at is not None and now > _as_utc(discount.ends_at):
        raise DiscountRejected("coupon_invalid", "expired")
    if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
        raise DiscountRejected("coupon_invalid", "usage_limit_reached")
    if discount.minimum_amount is not None and subtotal < discount.minimum_amount:
        raise DiscountRejected("coupon_minimum_not_met", "minimum_not_met")

    return AppliedDiscount(discount=discount, amount=compute_discount_amount(discount, subtotal))


async def increment_usage(session: AsyncSession, discount_id: str) -> bool:
    """Count one use unless the limit is already reached. Returns whether a row was updated."""
    result = await session.execute(
        update(Discount)
        .where(
            Discount.id == discount_id,
            or_(Discount.usage_limit.is_(None), Discount.usage_count < Discount.usage_limit),
        )
        .values(usage_count=Discount.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    updated = result.rowcount == 1
    if not updated:
        logger.warning("checkout.coupon.limit_reached", discount_id=discount_id)
    return updated
