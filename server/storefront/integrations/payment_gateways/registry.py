"""
Payment gateway registry

Closed mapping from provider type to adapter class, and the factory that
turns a stored provider configuration into a configured adapter.
"""

from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Type, Union

import httpx

from .base import GatewayConfigError, PaymentGateway, PaymentProviderType, ProviderConfig
from .hosted_fields_adapter import HostedFieldsAdapter
from .paypal_adapter import PayPalAdapter
from .payplus_adapter import PayPlusAdapter
from .pelecard_adapter import PelecardAdapter

GATEWAY_REGISTRY: Mapping[PaymentProviderType, Type[PaymentGateway]] = MappingProxyType(
    {
        PaymentProviderType.PAYPLUS: PayPlusAdapter,
        PaymentProviderType.PELECARD: PelecardAdapter,
        PaymentProviderType.PAYPAL: PayPalAdapter,
        PaymentProviderType.HOSTED_FIELDS: HostedFieldsAdapter,
    }
)


def get_supported_gateways() -> List[PaymentProviderType]:
    """Get list of registered gateway types."""
    return list(GATEWAY_REGISTRY.keys())


def create_gateway(
    provider_type: Union[PaymentProviderType, str],
    config: ProviderConfig,
    http_client: Optional[httpx.AsyncClient] = None,
    timeout: float = 30.0,
) -> PaymentGateway:
    """
    Create and configure a payment gateway instance.

    Args:
        provider_type: Registered provider type or its string value
        config: Credentials and settings for the provider
        http_client: Optional shared HTTP client
        timeout: Request timeout for a lazily created client

    Returns:
        A configured adapter

    Raises:
        GatewayConfigError: If the type is unknown or credentials are missing
    """
    try:
        resolved = PaymentProviderType(provider_type)
    except ValueError as exc:
        raise GatewayConfigError(
            f"Unsupported gateway type: {provider_type}", error_code="unsupported_provider"
        ) from exc

    gateway_class = GATEWAY_REGISTRY.get(resolved)
    if gateway_class is None:
        raise GatewayConfigError(f"Unsupported gateway type: {resolved.value}", error_code="unsupported_provider")

    gateway = gateway_class(http_client=http_client, timeout=timeout)
    gateway.configure(config)
    return gateway


def describe_gateways() -> Dict[str, List[str]]:
    """Required credential names per provider, for admin forms."""
    return {
        provider.value: list(gateway_class.required_credentials)
        for provider, gateway_class in GATEWAY_REGISTRY.items()
    }
