from datetime import datetime
from decimal import Decimal

from pydantic import Field

from storefront.integrations.payment_gateways.base import PaymentProviderType, TransactionStatus
from storefront.schemas.common import ORMModel, Timestamped


class FinalizationResult(ORMModel):
    success: bool
    status: TransactionStatus | None = None
    duplicate: bool = False
    requires_action: bool = False
    redirect_url: str | None = None
    order_id: str | None = None
    order_reference: str | None = None
    error_code: str | None = None
    error: str | None = None
    status_code: int = 200


class HostedFieldsChargeRequest(ORMModel):
    store_slug: str = Field(min_length=1, max_length=120)
    order_reference: str = Field(min_length=1, max_length=64)
    buyer_key: str = Field(min_length=1, max_length=255)
    installments: int = Field(default=1, ge=1, le=36)


class ConnectionTestRead(ORMModel):
    provider: PaymentProviderType
    success: bool
    message: str
    tested_at: datetime


class PaymentProviderRead(Timestamped):
    id: str
    store_id: str
    provider: PaymentProviderType
    display_name: str | None
    is_active: bool
    is_default: bool
    test_mode: bool
    total_transactions: int
    total_volume: Decimal
    last_tested_at: datetime | None
    last_test_ok: bool | None
