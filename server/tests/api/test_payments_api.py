"""
HTTP tests for the payment and provider-management endpoints.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from gateway_stubs import HOSTED_FIELDS_CREDENTIALS, PAYPLUS_CREDENTIALS, payplus_webhook
from storefront.api.dependencies.database import get_db
from storefront.api.dependencies.redis import get_redis_client
from storefront.core.config import clear_settings_cache, get_settings
from storefront.db.base import Base
from storefront.integrations.payment_gateways.base import PaymentProviderType
from storefront.main import app
from storefront.models.payment import PaymentProviderConfig, PendingPayment
from storefront.models.store import Store
from storefront.services.outbox_service import ORDER_PAID, enqueue_event


async def _prepare(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with factory() as session:
        demo = Store(slug="demo-shop", name="Demo Shop", currency="ILS", locale="he", order_counter=1000)
        empty = Store(slug="empty-shop", name="Empty Shop", currency="ILS", locale="en", order_counter=1000)
        session.add_all([demo, empty])
        await session.flush()
        session.add_all(
            [
                PaymentProviderConfig(
                    store_id=demo.id,
                    provider=PaymentProviderType.PAYPLUS,
                    display_name="PayPlus",
                    credentials=dict(PAYPLUS_CREDENTIALS),
                    is_active=True,
                    is_default=True,
                ),
                PaymentProviderConfig(
                    store_id=demo.id,
                    provider=PaymentProviderType.HOSTED_FIELDS,
                    display_name="Card",
                    credentials=dict(HOSTED_FIELDS_CREDENTIALS),
                    is_active=True,
                ),
                PaymentProviderConfig(
                    store_id=demo.id,
                    provider=PaymentProviderType.PELECARD,
                    display_name="Pelecard",
                    credentials={"terminal": "0962210"},
                    is_active=False,
                ),
            ]
        )
        await session.commit()


async def _backdate_pending_payments(engine) -> None:
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with factory() as session:
        await session.execute(
            update(PendingPayment).values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
        )
        await session.commit()


async def _enqueue_paid_event(engine) -> None:
    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    async with factory() as session:
        store = (await session.execute(select(Store).where(Store.slug == "demo-shop"))).scalars().one()
        await enqueue_event(
            session,
            store_id=store.id,
            order_id=None,
            event_type=ORDER_PAID,
            payload={"order_id": "o-1"},
            schedule_in_seconds=-1,
        )
        await session.commit()


@pytest.fixture
def api_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    asyncio.run(_prepare(engine))
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture
def client(api_engine, settings):
    factory = async_sessionmaker(api_engine, expire_on_commit=False, class_=AsyncSession)

    async def override_get_db():
        async with factory() as session:
            yield session

    async def override_get_redis_client():
        yield None

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis_client] = override_get_redis_client
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()


def checkout_body(**overrides) -> dict:
    body = {
        "store_slug": "demo-shop",
        "amount": "25.00",
        "customer": {"first_name": "Dana", "last_name": "Levi", "email": "dana@example.com"},
        "items": [{"name": "Gift card", "quantity": 1, "price": "25.00"}],
    }
    body.update(overrides)
    return body


def test_health_reports_environment(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "staging")
    clear_settings_cache()
    try:
        response = TestClient(app).get("/health")
    finally:
        clear_settings_cache()

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "environment": "staging"}


class TestInitiateEndpoint:
    def test_missing_fields_are_listed(self, client):
        response = client.post("/api/payments/initiate", json={"amount": "10"})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error_code"] == "validation_error"
        assert data["details"]["missing"] == ["store_slug", "customer.name", "customer.email", "items"]
        assert "status_code" not in data

    def test_schema_violation_is_unprocessable(self, client):
        body = checkout_body(items=[{"name": "Gift card", "quantity": 0, "price": "25.00"}])
        assert client.post("/api/payments/initiate", json=body).status_code == 422

    def test_store_without_providers(self, client):
        response = client.post("/api/payments/initiate", json=checkout_body(store_slug="empty-shop"))

        assert response.status_code == 400
        assert response.json()["error_code"] == "provider_not_configured"

    def test_unknown_store(self, client):
        response = client.post("/api/payments/initiate", json=checkout_body(store_slug="nowhere"))

        assert response.status_code == 404
        assert response.json()["error_code"] == "store_not_found"

    def test_hosted_fields_returns_client_token(self, client):
        response = client.post("/api/payments/initiate", json=checkout_body(provider="hosted_fields"))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["order_number"] == 1001
        assert data["provider_request_id"] == f"qp_{data['order_reference']}"
        assert json.loads(data["client_token"])["public_key"] == "pk-public"
        assert "payment_url" not in data


class TestCallbackEndpoints:
    def test_unknown_store_is_not_received(self, client):
        body = payplus_webhook("req-x", "REF-X")
        response = client.post("/api/payments/callback?provider=payplus&store=nowhere", content=body)

        assert response.status_code == 404
        assert response.json()["received"] is False

    def test_unsigned_webhook_is_rejected(self, client):
        body = payplus_webhook("req-x", "REF-X")
        response = client.post(
            "/api/payments/callback?provider=payplus&store=demo-shop",
            content=body,
            headers={"user-agent": "PayPlus", "hash": "forged"},
        )

        assert response.status_code == 401
        data = response.json()
        assert data["received"] is False
        assert data["error_code"] == "invalid_signature"

    def test_unsupported_provider_is_unprocessable(self, client):
        response = client.post("/api/payments/callback?provider=stripe&store=demo-shop", content=b"{}")
        assert response.status_code == 422

    def test_hosted_charge_for_unknown_order(self, client):
        response = client.post(
            "/api/payments/hosted-fields/charge",
            json={"store_slug": "demo-shop", "order_reference": "QS-MISSING", "buyer_key": "BUYER-TOKEN"},
        )

        assert response.status_code == 404
        assert response.json()["success"] is False


class TestProviderEndpoints:
    def test_list_hides_credentials(self, client):
        response = client.get("/api/stores/demo-shop/payment-providers")

        assert response.status_code == 200
        providers = response.json()
        assert providers[0]["provider"] == "payplus"
        assert providers[0]["is_default"] is True
        assert {p["provider"] for p in providers} == {"payplus", "hosted_fields", "pelecard"}
        assert all("credentials" not in p for p in providers)

    def test_unknown_store_is_404(self, client):
        assert client.get("/api/stores/nowhere/payment-providers").status_code == 404

    def test_available_providers(self, client):
        response = client.get("/api/stores/demo-shop/payment-providers/available")

        assert response.status_code == 200
        assert response.json()["payplus"] == ["api_key", "secret_key", "payment_page_uid"]
        assert set(response.json()) == {"payplus", "pelecard", "paypal", "hosted_fields"}

    def test_set_default_moves_the_flag(self, client):
        response = client.post("/api/stores/demo-shop/payment-providers/hosted_fields/default")

        assert response.status_code == 200
        assert response.json()["is_default"] is True
        listed = client.get("/api/stores/demo-shop/payment-providers").json()
        assert [p["provider"] for p in listed if p["is_default"]] == ["hosted_fields"]

    def test_set_default_for_unconfigured_provider(self, client):
        assert client.post("/api/stores/demo-shop/payment-providers/paypal/default").status_code == 404

    def test_connection_test_with_incomplete_credentials(self, client):
        response = client.post("/api/stores/demo-shop/payment-providers/pelecard/test")

        assert response.status_code == 400
        assert "user" in response.json()["detail"]


class TestMaintenanceEndpoints:
    def test_expire_cancels_abandoned_checkouts(self, client, api_engine):
        placed = client.post("/api/payments/initiate", json=checkout_body(provider="hosted_fields"))
        assert placed.status_code == 200
        assert client.post("/api/payments/maintenance/expire").json() == {"expired": 0}

        asyncio.run(_backdate_pending_payments(api_engine))
        response = client.post("/api/payments/maintenance/expire")

        assert response.status_code == 200
        assert response.json() == {"expired": 1}
        assert client.post("/api/payments/maintenance/expire").json() == {"expired": 0}

    def test_dispatch_marks_due_events(self, client, api_engine):
        asyncio.run(_enqueue_paid_event(api_engine))

        response = client.post("/api/payments/maintenance/events/dispatch")

        assert response.status_code == 200
        assert response.json() == {"dispatched": 1}
        assert client.post("/api/payments/maintenance/events/dispatch").json() == {"dispatched": 0}

    def test_configured_token_is_required(self, client, settings):
        settings.maintenance_token = "job-secret"

        assert client.post("/api/payments/maintenance/expire").status_code == 401
        forged = client.post("/api/payments/maintenance/expire", headers={"X-Maintenance-Token": "guess"})
        assert forged.status_code == 401
        allowed = client.post("/api/payments/maintenance/expire", headers={"X-Maintenance-Token": "job-secret"})
        assert allowed.json() == {"expired": 0}
