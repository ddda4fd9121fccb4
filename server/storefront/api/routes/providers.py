from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.dependencies.database import get_db
from storefront.core.config import Settings, get_settings
from storefront.integrations.payment_gateways.base import (
    ConnectionTestResult,
    GatewayConfigError,
    GatewayTransportError,
    PaymentProviderType,
)
from storefront.integrations.payment_gateways.registry import describe_gateways
from storefront.models.payment import PaymentProviderConfig
from storefront.models.store import Store
from storefront.schemas.payment import ConnectionTestRead, PaymentProviderRead
from storefront.services.provider_service import (
    build_gateway,
    get_provider_config,
    record_connection_test,
    set_default_provider,
)


router = APIRouter(prefix="/api/stores/{slug}/payment-providers", tags=["payment-providers"])


async def _get_store(session: AsyncSession, slug: str) -> Store:
    result = await session.execute(select(Store).where(Store.slug == slug))
    store = result.scalars().first()
    if store is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    return store


@router.get("", response_model=list[PaymentProviderRead])
async def list_providers_endpoint(slug: str, session: AsyncSession = Depends(get_db)) -> list[PaymentProviderRead]:
    store = await _get_store(session, slug)
    result = await session.execute(
        select(PaymentProviderConfig)
        .where(PaymentProviderConfig.store_id == store.id)
        .order_by(PaymentProviderConfig.is_default.desc(), PaymentProviderConfig.created_at.asc())
    )
    return [PaymentProviderRead.model_validate(row) for row in result.scalars().all()]


@router.get("/available")
async def available_providers_endpoint(slug: str) -> dict[str, list[str]]:  # noqa: ARG001
    return describe_gateways()


@router.post("/{provider}/test", response_model=ConnectionTestRead)
async def test_provider_endpoint(
    slug: str,
    provider: PaymentProviderType,
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> ConnectionTestRead:
    store = await _get_store(session, slug)
    row = await get_provider_config(session, store, provider)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment provider not configured")

    try:
        gateway = build_gateway(row, timeout=settings.gateway_timeout_seconds)
    except GatewayConfigError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.error_message) from exc

    try:
        outcome = await gateway.test_connection()
    except GatewayTransportError as exc:
        outcome = ConnectionTestResult(success=False, message=exc.error_message)
    finally:
        await gateway.close()

    tested_at = await record_connection_test(session, row, outcome)
    await session.commit()
    return ConnectionTestRead(provider=provider, success=outcome.success, message=outcome.message, tested_at=tested_at)


@router.post("/{provider}/default", response_model=PaymentProviderRead)
async def set_default_provider_endpoint(
    slug: str,
    provider: PaymentProviderType,
    session: AsyncSession = Depends(get_db),
) -> PaymentProviderRead:
    store = await _get_store(session, slug)
    row = await set_default_provider(session, store, provider)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment provider not configured")
    await session.commit()
    await session.refresh(row)
    return PaymentProviderRead.model_validate(row)
