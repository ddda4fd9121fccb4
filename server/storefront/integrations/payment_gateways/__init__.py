"""
Payment gateway integration modules

Provides adapters for the storefront's payment providers behind one
capability contract, plus the closed registry that constructs them.
"""

from .base import (
    ConnectionTestResult,
    CustomerDetails,
    GatewayConfigError,
    GatewayTransportError,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    LineItem,
    LineItemKind,
    ParsedCallback,
    PaymentError,
    PaymentGateway,
    PaymentProviderType,
    ProviderConfig,
    RefundRequest,
    RefundResponse,
    TransactionStatus,
    TransactionStatusRequest,
    WebhookValidationResult,
)
from .hosted_fields_adapter import HostedFieldsAdapter, SaleResult
from .paypal_adapter import PayPalAdapter
from .payplus_adapter import PayPlusAdapter
from .pelecard_adapter import PelecardAdapter
from .registry import GATEWAY_REGISTRY, create_gateway, get_supported_gateways

__all__ = [
    "ConnectionTestResult",
    "CustomerDetails",
    "GATEWAY_REGISTRY",
    "GatewayConfigError",
    "GatewayTransportError",
    "HostedFieldsAdapter",
    "InitiatePaymentRequest",
    "InitiatePaymentResponse",
    "LineItem",
    "LineItemKind",
    "ParsedCallback",
    "PayPalAdapter",
    "PayPlusAdapter",
    "PaymentError",
    "PaymentGateway",
    "PaymentProviderType",
    "PelecardAdapter",
    "ProviderConfig",
    "RefundRequest",
    "RefundResponse",
    "SaleResult",
    "TransactionStatus",
    "TransactionStatusRequest",
    "WebhookValidationResult",
    "create_gateway",
    "get_supported_gateways",
]
