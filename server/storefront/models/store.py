from __future__ import annotations

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from storefront.db.base import Base
from storefront.models.mixins import Identifier, TimestampMixin

ORDER_COUNTER_START = 1000


class Store(TimestampMixin, Base):
    __tablename__ = "stores"

    id: Mapped[Identifier]
    slug: Mapped[str] = mapped_column(String(120), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    custom_domain: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), default="ILS", nullable=False)
    locale: Mapped[str] = mapped_column(String(8), default="he", nullable=False)
    order_counter: Mapped[int] = mapped_column(Integer, default=ORDER_COUNTER_START, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
