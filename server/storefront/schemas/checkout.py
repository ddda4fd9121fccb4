from decimal import Decimal
from typing import Any, List

from pydantic import BaseModel, EmailStr, Field

from storefront.integrations.payment_gateways.base import PaymentProviderType
from storefront.schemas.common import Money, ORMModel


class CheckoutCustomer(BaseModel):
    first_name: str = Field(default="", max_length=120)
    last_name: str = Field(default="", max_length=120)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=120)
    postal_code: str | None = Field(default=None, max_length=20)
    accepts_marketing: bool = False
    create_account: bool = False
    password: str | None = Field(default=None, min_length=8, max_length=128)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name.strip(), self.last_name.strip()) if part)


class CartAddon(BaseModel):
    name: str = Field(max_length=255)
    value: str | None = Field(default=None, max_length=255)
    # may be negative
    price_adjustment: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)


class CartItem(BaseModel):
    product_id: str | None = None
    variant_id: str | None = None
    name: str | None = Field(default=None, max_length=255)
    variant_title: str | None = Field(default=None, max_length=255)
    sku: str | None = Field(default=None, max_length=120)
    quantity: int = Field(ge=1)
    price: Money
    image_url: str | None = Field(default=None, max_length=500)
    addons: List[CartAddon] = Field(default_factory=list)
    bundle: dict[str, Any] | None = None

    @property
    def unit_price(self) -> Decimal:
        return self.price + sum((addon.price_adjustment for addon in self.addons), Decimal("0"))


class ShippingSelection(BaseModel):
    method: str = Field(max_length=120)
    cost: Money = Decimal("0")


class UTMParameters(BaseModel):
    source: str | None = Field(default=None, max_length=120)
    medium: str | None = Field(default=None, max_length=120)
    campaign: str | None = Field(default=None, max_length=120)


class CheckoutRequest(BaseModel):
    store_slug: str = ""
    provider: PaymentProviderType | None = None
    amount: Decimal = Decimal("0")
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    locale: str | None = Field(default=None, max_length=8)
    customer: CheckoutCustomer = Field(default_factory=CheckoutCustomer)
    items: List[CartItem] = Field(default_factory=list)
    shipping: ShippingSelection | None = None
    shipping_address: dict[str, Any] | None = None
    billing_address: dict[str, Any] | None = None
    discount_code: str | None = Field(default=None, max_length=64)
    discount_amount: Decimal | None = None
    credit_used: Money = Decimal("0")
    influencer_id: str | None = None
    utm: UTMParameters | None = None
    note: str | None = None
    order_data: dict[str, Any] = Field(default_factory=dict)


class RequestContext(BaseModel):
    ip_address: str | None = None
    user_agent: str | None = None


class CheckoutResult(ORMModel):
    success: bool
    payment_url: str | None = None
    client_token: str | None = None
    order_reference: str | None = None
    provider_request_id: str | None = None
    order_id: str | None = None
    order_number: int | None = None
    error_code: str | None = None
    error: str | None = None
    status_code: int = 200
    details: dict[str, Any] = Field(default_factory=dict)
