from decimal import Decimal

import pytest
from pydantic import ValidationError

from storefront.core.config import Settings
from storefront.core.logging import REDACTED, redact_sensitive
from storefront.core.messages import get_message
from storefront.core.security import hash_password, verify_password
from storefront.schemas.checkout import CartAddon, CartItem, ShippingSelection


def test_redact_sensitive_masks_only_known_keys():
    event = redact_sensitive(
        None,
        "info",
        {"event": "payment.provider.tested", "credentials": {"api_key": "k"}, "buyer_key": "tok", "store_id": "s-1"},
    )

    assert event["credentials"] == REDACTED
    assert event["buyer_key"] == REDACTED
    assert event["store_id"] == "s-1"


def test_settings_reject_non_positive_ttl():
    with pytest.raises(ValidationError):
        Settings(pending_payment_ttl_minutes=0)


def test_settings_strip_trailing_slash_from_app_url():
    assert Settings(app_url="https://platform.test/").app_url == "https://platform.test"


def test_password_hash_round_trip():
    password_hash = hash_password("correct horse")

    assert password_hash != "correct horse"
    assert verify_password("correct horse", password_hash)
    assert not verify_password("wrong horse", password_hash)


@pytest.mark.parametrize(
    "code, locale, expected",
    [
        ("coupon_invalid", "he", "קוד הקופון אינו תקף יותר"),
        ("coupon_invalid", "fr", "This coupon is no longer valid"),
        ("no_such_code", "en", "Something went wrong during checkout"),
    ],
)
def test_localized_messages(code, locale, expected):
    assert get_message(code, locale) == expected


@pytest.mark.parametrize("price", ["-1", "10.005", "12345678901.00"])
def test_money_fields_reject_invalid_amounts(price):
    with pytest.raises(ValidationError):
        CartItem(name="Gift card", quantity=1, price=price)


def test_money_defaults():
    assert ShippingSelection(method="Pickup").cost == Decimal("0")


def test_addon_adjustment_is_limited_to_cents():
    assert CartAddon(name="Coupon insert", price_adjustment="-2.50").price_adjustment == Decimal("-2.50")
    with pytest.raises(ValidationError):
        CartAddon(name="Engraving", price_adjustment="0.005")
