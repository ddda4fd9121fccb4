from storefront.services import (
    callback_service,
    checkout_service,
    customer_service,
    discount_service,
    error_sanitizer,
    inventory_service,
    outbox_service,
    provider_service,
    state_machine,
)

__all__ = [
    "callback_service",
    "checkout_service",
    "customer_service",
    "discount_service",
    "error_sanitizer",
    "inventory_service",
    "outbox_service",
    "provider_service",
    "state_machine",
]
