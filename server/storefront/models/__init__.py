from storefront.models.audit import AuditCategory, AuditLog
from storefront.models.catalog import Product, ProductVariant
from storefront.models.customer import Customer
from storefront.models.discount import Discount, DiscountType
from storefront.models.event import EventOutbox, EventStatus
from storefront.models.order import FinancialStatus, FulfillmentStatus, Order, OrderItem, OrderStatus
from storefront.models.payment import (
    PaymentProviderConfig,
    PaymentTransaction,
    PendingPayment,
    TransactionType,
)
from storefront.models.store import Store

__all__ = [
    "AuditCategory",
    "AuditLog",
    "Customer",
    "Discount",
    "DiscountType",
    "EventOutbox",
    "EventStatus",
    "FinancialStatus",
    "FulfillmentStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentProviderConfig",
    "PaymentTransaction",
    "PendingPayment",
    "Product",
    "ProductVariant",
    "Store",
    "TransactionType",
]
