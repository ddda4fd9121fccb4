"""
Shared test configuration and fixtures for the storefront payment pipeline.
"""

from decimal import Decimal
from typing import Callable

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gateway_stubs import (
    HOSTED_FIELDS_CREDENTIALS,
    PAYPAL_CREDENTIALS,
    PAYPLUS_CREDENTIALS,
    GatewayStub,
    payplus_responder,
)
from storefront.core.config import Settings
from storefront.db.base import Base
from storefront.integrations.payment_gateways.base import PaymentProviderType
from storefront.models.catalog import Product
from storefront.models.discount import Discount, DiscountType
from storefront.models.payment import PaymentProviderConfig
from storefront.models.store import Store
from storefront.schemas.checkout import CartItem, CheckoutCustomer, CheckoutRequest, ShippingSelection


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_url="https://platform.test",
        database_url="sqlite+aiosqlite://",
        redis_url="",
        default_locale="he",
    )


@pytest_asyncio.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as db_session:
        yield db_session


@pytest_asyncio.fixture
async def store(session) -> Store:
    shop = Store(slug="demo-shop", name="Demo Shop", currency="ILS", locale="he", order_counter=1000)
    session.add(shop)
    await session.commit()
    return shop


@pytest_asyncio.fixture
async def products(session, store) -> dict:
    shirt = Product(store_id=store.id, name="T-Shirt", sku="TS-1", price=Decimal("50.00"), inventory=10)
    mug = Product(store_id=store.id, name="Mug", sku="MG-1", price=Decimal("20.00"), inventory=1)
    session.add_all([shirt, mug])
    await session.commit()
    return {"shirt": shirt, "mug": mug}


@pytest_asyncio.fixture
async def payplus_config(session, store) -> PaymentProviderConfig:
    row = PaymentProviderConfig(
        store_id=store.id,
        provider=PaymentProviderType.PAYPLUS,
        display_name="PayPlus",
        credentials=dict(PAYPLUS_CREDENTIALS),
        is_active=True,
        is_default=True,
    )
    session.add(row)
    await session.commit()
    return row


@pytest_asyncio.fixture
async def hosted_fields_config(session, store) -> PaymentProviderConfig:
    row = PaymentProviderConfig(
        store_id=store.id,
        provider=PaymentProviderType.HOSTED_FIELDS,
        display_name="Card",
        credentials=dict(HOSTED_FIELDS_CREDENTIALS),
        is_active=True,
    )
    session.add(row)
    await session.commit()
    return row


@pytest_asyncio.fixture
async def paypal_config(session, store) -> PaymentProviderConfig:
    row = PaymentProviderConfig(
        store_id=store.id,
        provider=PaymentProviderType.PAYPAL,
        display_name="PayPal",
        credentials={**PAYPAL_CREDENTIALS, "webhook_id": "WH-ID", "webhook_secret": "wh-secret"},
        is_active=True,
    )
    session.add(row)
    await session.commit()
    return row


@pytest_asyncio.fixture
async def discount(session, store) -> Discount:
    coupon = Discount(
        store_id=store.id,
        code="SAVE10",
        type=DiscountType.PERCENTAGE,
        value=Decimal("10"),
        minimum_amount=Decimal("50"),
    )
    session.add(coupon)
    await session.commit()
    return coupon


@pytest_asyncio.fixture
async def payplus_gateway():
    stub = GatewayStub(payplus_responder())
    yield stub
    await stub.aclose()


@pytest.fixture
def checkout_request(products) -> Callable[..., CheckoutRequest]:
    """Two shirts at 50 with 20 shipping unless overridden."""

    def build(**overrides) -> CheckoutRequest:
        fields = {
            "store_slug": "demo-shop",
            "amount": Decimal("110.00"),
            "customer": CheckoutCustomer(first_name="Dana", last_name="Levi", email="dana@example.com", phone="0501234567"),
            "items": [CartItem(product_id=products["shirt"].id, name="T-Shirt", quantity=2, price=Decimal("50.00"))],
            "shipping": ShippingSelection(method="Courier", cost=Decimal("20.00")),
            "discount_code": "SAVE10",
        }
        fields.update(overrides)
        return CheckoutRequest(**fields)

    return build
