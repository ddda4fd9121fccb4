from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.integrations.payment_gateways.base import (
    ConnectionTestResult,
    GatewayConfigError,
    PaymentGateway,
    PaymentProviderType,
    ProviderConfig,
)
from storefront.integrations.payment_gateways.registry import create_gateway
from storefront.models.payment import PaymentProviderConfig
from storefront.models.store import Store

logger = get_logger(__name__)


@dataclass(slots=True)
class ResolvedProvider:
    config: PaymentProviderConfig
    gateway: PaymentGateway

    @property
    def provider_type(self) -> PaymentProviderType:
        return self.config.provider


def build_gateway(
    row: PaymentProviderConfig,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> PaymentGateway:
    config = ProviderConfig(
        provider_type=row.provider,
        credentials=dict(row.credentials or {}),
        settings=dict(row.settings or {}),
        test_mode=row.test_mode,
    )
    return create_gateway(row.provider, config, http_client=http_client, timeout=timeout)


def _resolve(
    row: PaymentProviderConfig,
    *,
    http_client: httpx.AsyncClient | None,
    timeout: float,
) -> ResolvedProvider | None:
    try:
        gateway = build_gateway(row, http_client=http_client, timeout=timeout)
    except GatewayConfigError as exc:
        logger.warning(
            "payment.provider.misconfigured",
            store_id=row.store_id,
            provider=row.provider.value,
            error=exc.error_message,
        )
        return None
    return ResolvedProvider(config=row, gateway=gateway)


async def get_provider_config(
    session: AsyncSession, store: Store, provider_type: PaymentProviderType
) -> PaymentProviderConfig | None:
    result = await session.execute(
        select(PaymentProviderConfig).where(
            PaymentProviderConfig.store_id == store.id,
            PaymentProviderConfig.provider == provider_type,
        )
    )
    return result.scalars().first()


async def get_configured_provider(
    session: AsyncSession,
    store: Store,
    provider_type: PaymentProviderType | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> ResolvedProvider | None:
    """
    Resolve the store's active provider to a configured adapter.

    An explicit type resolves only that provider. Without one, the store's
    default row wins, then the first active row; rows whose credentials do
    not build an adapter are skipped.
    """
    query = select(PaymentProviderConfig).where(
        PaymentProviderConfig.store_id == store.id,
        PaymentProviderConfig.is_active.is_(True),
    )
    if provider_type is not None:
        query = query.where(PaymentProviderConfig.provider == provider_type)
    query = query.order_by(PaymentProviderConfig.is_default.desc(), PaymentProviderConfig.created_at.asc())

    result = await session.execute(query)
    for row in result.scalars().all():
        resolved = _resolve(row, http_client=http_client, timeout=timeout)
        if resolved is not None:
            return resolved
    logger.info(
        "payment.provider.not_configured",
        store_id=store.id,
        provider=provider_type.value if provider_type else None,
    )
    return None


async def get_active_providers(
    session: AsyncSession,
    store: Store,
    *,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = 30.0,
) -> list[ResolvedProvider]:
    result = await session.execute(
        select(PaymentProviderConfig)
        .where(PaymentProviderConfig.store_id == store.id, PaymentProviderConfig.is_active.is_(True))
        .order_by(PaymentProviderConfig.is_default.desc(), PaymentProviderConfig.created_at.asc())
    )
    providers = []
    for row in result.scalars().all():
        resolved = _resolve(row, http_client=http_client, timeout=timeout)
        if resolved is not None:
            providers.append(resolved)
    return providers


async def set_default_provider(
    session: AsyncSession, store: Store, provider_type: PaymentProviderType
) -> PaymentProviderConfig | None:
    row = await get_provider_config(session, store, provider_type)
    if row is None:
        return None

    await session.execute(
        update(PaymentProviderConfig)
        .where(PaymentProviderConfig.store_id == store.id, PaymentProviderConfig.id != row.id)
        .values(is_default=False)
    )
    row.is_default = True
    await session.flush()
    logger.info("payment.provider.default_set", store_id=store.id, provider=provider_type.value)
    return row


async def record_provider_usage(session: AsyncSession, provider_config_id: str, amount: Decimal) -> None:
    await session.execute(
        update(PaymentProviderConfig)
        .where(PaymentProviderConfig.id == provider_config_id)
        .values(
            total_transactions=PaymentProviderConfig.total_transactions + 1,
            total_volume=PaymentProviderConfig.total_volume + amount,
        )
    )


async def record_connection_test(
    session: AsyncSession, row: PaymentProviderConfig, result: ConnectionTestResult
) -> datetime:
    tested_at = datetime.now(timezone.utc)
    row.last_tested_at = tested_at
    row.last_test_ok = result.success
    await session.flush()
    logger.info(
        "payment.provider.tested",
        store_id=row.store_id,
        provider=row.provider.value,
        success=result.success,
    )
    return tested_at
