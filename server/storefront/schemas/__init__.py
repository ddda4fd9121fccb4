from storefront.schemas.checkout import (
    CartAddon,
    CartItem,
    CheckoutCustomer,
    CheckoutRequest,
    CheckoutResult,
    RequestContext,
    ShippingSelection,
    UTMParameters,
)
from storefront.schemas.payment import (
    ConnectionTestRead,
    FinalizationResult,
    HostedFieldsChargeRequest,
    PaymentProviderRead,
)

__all__ = [
    "CartAddon",
    "CartItem",
    "CheckoutCustomer",
    "CheckoutRequest",
    "CheckoutResult",
    "ConnectionTestRead",
    "FinalizationResult",
    "HostedFieldsChargeRequest",
    "PaymentProviderRead",
    "RequestContext",
    "ShippingSelection",
    "UTMParameters",
]
