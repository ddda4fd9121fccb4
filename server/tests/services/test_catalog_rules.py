"""
Inventory, discount and customer rules applied during checkout.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storefront.core.security import verify_password
from storefront.models.catalog import Product, ProductVariant
from storefront.models.discount import Discount, DiscountType
from storefront.schemas.checkout import CartItem, CheckoutCustomer
from storefront.services.customer_service import resolve_customer
from storefront.services.discount_service import (
    DiscountRejected,
    compute_discount_amount,
    increment_usage,
    validate_discount,
)
from storefront.services.inventory_service import validate_inventory


class TestInventory:
    @pytest.mark.asyncio
    async def test_collects_every_violation(self, session, store):
        in_stock = Product(store_id=store.id, name="Hat", price=Decimal("30"), inventory=5)
        sold_out = Product(store_id=store.id, name="Scarf", price=Decimal("40"), inventory=0)
        retired = Product(store_id=store.id, name="Old", price=Decimal("10"), inventory=9, is_active=False)
        backorder = Product(store_id=store.id, name="Print", price=Decimal("60"), inventory=0, allow_backorder=True)
        untracked = Product(store_id=store.id, name="E-book", price=Decimal("15"), track_inventory=False)
        session.add_all([in_stock, sold_out, retired, backorder, untracked])
        await session.commit()

        items = [
            CartItem(product_id=in_stock.id, quantity=4, price=Decimal("30")),
            CartItem(product_id=in_stock.id, quantity=2, price=Decimal("30")),
            CartItem(product_id=sold_out.id, quantity=1, price=Decimal("40")),
            CartItem(product_id=retired.id, quantity=1, price=Decimal("10")),
            CartItem(product_id=backorder.id, quantity=3, price=Decimal("60")),
            CartItem(product_id=untracked.id, quantity=100, price=Decimal("15")),
            CartItem(product_id="missing-product", quantity=1, price=Decimal("5")),
            CartItem(name="Custom engraving", quantity=1, price=Decimal("25")),
        ]

        report = await validate_inventory(session, store.id, items)

        assert not report.ok
        assert [line["product_id"] for line in report.insufficient_stock_items] == [in_stock.id]
        assert report.insufficient_stock_items[0]["requested"] == 6
        assert [line["name"] for line in report.out_of_stock_items] == ["Scarf"]
        assert {line["product_id"] for line in report.inactive_items} == {retired.id, "missing-product"}

    @pytest.mark.asyncio
    async def test_variant_stock_is_checked_instead_of_product(self, session, store):
        product = Product(store_id=store.id, name="Shoe", price=Decimal("200"), inventory=50, has_variants=True)
        session.add(product)
        await session.flush()
        small = ProductVariant(product_id=product.id, title="38", price=Decimal("200"), inventory=1)
        session.add(small)
        await session.commit()

        report = await validate_inventory(
            session, store.id, [CartItem(product_id=product.id, variant_id=small.id, quantity=2, price=Decimal("200"))]
        )

        assert report.insufficient_stock_items[0]["variant_id"] == small.id
        assert report.insufficient_stock_items[0]["available"] == 1

    @pytest.mark.asyncio
    async def test_empty_cart_of_custom_lines_is_ok(self, session, store):
        report = await validate_inventory(session, store.id, [CartItem(name="Gift card", quantity=1, price=Decimal("50"))])
        assert report.ok


class TestDiscounts:
    @pytest.mark.parametrize(
        "kind, value, subtotal, expected",
        [
            (DiscountType.PERCENTAGE, Decimal("10"), Decimal("100"), Decimal("10.00")),
            (DiscountType.PERCENTAGE, Decimal("15"), Decimal("33.33"), Decimal("5.00")),
            (DiscountType.PERCENTAGE, Decimal("150"), Decimal("80"), Decimal("80.00")),
            (DiscountType.FIXED, Decimal("25"), Decimal("100"), Decimal("25.00")),
            (DiscountType.FIXED, Decimal("25"), Decimal("20"), Decimal("20.00")),
        ],
    )
    def test_compute_discount_amount(self, kind, value, subtotal, expected):
        discount = Discount(store_id="store-1", code="X", type=kind, value=value)
        assert compute_discount_amount(discount, subtotal) == expected

    @pytest.mark.asyncio
    async def test_code_lookup_is_case_insensitive(self, session, store, discount):
        applied = await validate_discount(session, store.id, " save10 ", Decimal("200"))
        assert applied.amount == Decimal("20.00")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "changes, reason",
        [
            ({"is_active": False}, "inactive"),
            ({"starts_at": datetime.now(timezone.utc) + timedelta(days=1)}, "not_started"),
            ({"ends_at": datetime.now(timezone.utc) - timedelta(days=1)}, "expired"),
            ({"usage_limit": 3, "usage_count": 3}, "usage_limit_reached"),
        ],
    )
    async def test_unusable_coupons_are_rejected(self, session, store, discount, changes, reason):
        for field, value in changes.items():
            setattr(discount, field, value)
        await session.commit()

        with pytest.raises(DiscountRejected) as exc_info:
            await validate_discount(session, store.id, "SAVE10", Decimal("200"))

        assert exc_info.value.code == "coupon_invalid"
        assert exc_info.value.reason == reason

    @pytest.mark.asyncio
    async def test_minimum_amount_has_its_own_code(self, session, store, discount):
        with pytest.raises(DiscountRejected) as exc_info:
            await validate_discount(session, store.id, "SAVE10", Decimal("49.99"))
        assert exc_info.value.code == "coupon_minimum_not_met"

    @pytest.mark.asyncio
    async def test_usage_increment_respects_limit(self, session, store, discount):
        discount.usage_limit = 1
        await session.commit()
        discount_id = discount.id

        assert await increment_usage(session, discount_id) is True
        assert await increment_usage(session, discount_id) is False
        await session.commit()

        await session.refresh(discount)
        assert discount.usage_count == 1


class TestCustomers:
    @pytest.mark.asyncio
    async def test_existing_customer_is_reused_and_updated(self, session, store):
        first = await resolve_customer(
            session, store.id, CheckoutCustomer(first_name="Dana", email="Dana@Example.com")
        )
        await session.commit()

        second = await resolve_customer(
            session, store.id, CheckoutCustomer(first_name="Dana", last_name="Levi", email="dana@example.com", phone="050")
        )

        assert second.id == first.id
        assert second.email == "dana@example.com"
        assert second.last_name == "Levi"
        assert second.phone == "050"

    @pytest.mark.asyncio
    async def test_password_is_set_only_once(self, session, store):
        customer = await resolve_customer(
            session,
            store.id,
            CheckoutCustomer(first_name="Noa", email="noa@example.com", create_account=True, password="first-secret"),
        )
        await session.commit()

        await resolve_customer(
            session,
            store.id,
            CheckoutCustomer(first_name="Noa", email="noa@example.com", create_account=True, password="other-secret"),
        )

        assert verify_password("first-secret", customer.password_hash)
        assert not verify_password("other-secret", customer.password_hash)

    @pytest.mark.asyncio
    async def test_guest_checkout_stores_no_password(self, session, store):
        customer = await resolve_customer(
            session, store.id, CheckoutCustomer(first_name="Guest", email="guest@example.com", password="ignored-pass")
        )
        assert customer.password_hash is None
