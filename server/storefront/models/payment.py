from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db.base import Base
from storefront.integrations.payment_gateways.base import PaymentProviderType, TransactionStatus
from storefront.models.mixins import Identifier, TimestampMixin


class TransactionType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    VOID = "void"
    AUTHORIZATION = "authorization"


class PaymentProviderConfig(TimestampMixin, Base):
    __tablename__ = "payment_providers"
    __table_args__ = (UniqueConstraint("store_id", "provider", name="uq_payment_provider_store"),)

    id: Mapped[Identifier]
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[PaymentProviderType] = mapped_column(SAEnum(PaymentProviderType), nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    credentials: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    settings: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    test_mode: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    total_transactions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_volume: Mapped[Decimal] = mapped_column(Numeric(precision=14, scale=2), default=Decimal("0"), nullable=False)
    last_tested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_test_ok: Mapped[bool | None] = mapped_column(Boolean, nullable=True)


class PendingPayment(TimestampMixin, Base):
    __tablename__ = "pending_payments"
    __table_args__ = (UniqueConstraint("provider_request_id", name="uq_pending_payment_request"),)

    id: Mapped[Identifier]
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[PaymentProviderType] = mapped_column(SAEnum(PaymentProviderType), nullable=False)
    provider_request_id: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[str] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    order_data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    cart_items: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[str | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="ILS", nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False
    )
    discount_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), default=Decimal("0"), nullable=False)
    influencer_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PaymentTransaction(TimestampMixin, Base):
    __tablename__ = "payment_transactions"

    id: Mapped[Identifier]
    store_id: Mapped[str] = mapped_column(ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id: Mapped[str | None] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True, index=True)
    customer_id: Mapped[str | None] = mapped_column(ForeignKey("customers.id", ondelete="SET NULL"), nullable=True)
    provider_config_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_providers.id", ondelete="SET NULL"), nullable=True
    )
    provider: Mapped[PaymentProviderType] = mapped_column(SAEnum(PaymentProviderType), nullable=False)
    type: Mapped[TransactionType] = mapped_column(SAEnum(TransactionType), default=TransactionType.CHARGE, nullable=False)
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="ILS", nullable=False)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_request_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    provider_approval_num: Mapped[str | None] = mapped_column(String(64), nullable=True)
    parent_transaction_id: Mapped[str | None] = mapped_column(
        ForeignKey("payment_transactions.id", ondelete="SET NULL"), nullable=True
    )
    provider_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
