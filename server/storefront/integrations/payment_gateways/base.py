"""
Payment Gateway Base Classes and Interfaces

Defines the canonical payment types and the capability contract that every
gateway adapter implements for the storefront checkout pipeline.
"""

import base64
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl

import httpx

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
STATUS_UNAVAILABLE = "status_unavailable"


class PaymentProviderType(str, Enum):
    """Supported payment gateway types."""
    PAYPLUS = "payplus"
    PELECARD = "pelecard"
    PAYPAL = "paypal"
    HOSTED_FIELDS = "hosted_fields"


class TransactionStatus(str, Enum):
    """Canonical transaction status every provider code maps into."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
)


class LineItemKind(str, Enum):
    """Kind of line sent to a gateway."""
    PRODUCT = "product"
    SHIPPING = "shipping"
    DISCOUNT = "discount"


@dataclass
class ProviderConfig:
    """Credentials and settings for one configured provider."""
    provider_type: PaymentProviderType
    credentials: Dict[str, Any]
    settings: Dict[str, Any] = field(default_factory=dict)
    test_mode: bool = True


@dataclass
class CustomerDetails:
    """Customer information for payment processing."""
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class LineItem:
    """A single gateway line. Discount lines carry a negative unit price."""
    name: str
    quantity: int
    unit_price: Decimal
    kind: LineItemKind = LineItemKind.PRODUCT
    sku: Optional[str] = None
    product_id: Optional[str] = None

    @property
    def total(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENTS, rounding=ROUND_HALF_UP)


@dataclass
class InitiatePaymentRequest:
    """Everything an adapter needs to create a charge or payment page."""
    amount: Decimal
    currency: str
    order_reference: str
    customer: CustomerDetails
    items: List[LineItem]
    success_url: str
    failure_url: str
    cancel_url: str
    callback_url: str
    language: str = "he"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def items_total(self) -> Decimal:
        return sum((item.total for item in self.items), Decimal("0"))

    def lines_of_kind(self, kind: LineItemKind) -> List[LineItem]:
        return [item for item in self.items if item.kind is kind]


@dataclass
class InitiatePaymentResponse:
    """Result of payment initiation."""
    success: bool
    provider_request_id: Optional[str] = None
    payment_url: Optional[str] = None
    client_token: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None

    @classmethod
    def failure(
        cls, error_code: str, error_message: str, raw_response: Optional[Dict[str, Any]] = None
    ) -> "InitiatePaymentResponse":
        return cls(success=False, error_code=error_code, error_message=error_message, raw_response=raw_response)


@dataclass
class RefundRequest:
    """Refund of a captured transaction."""
    provider_transaction_id: str
    amount: Decimal
    currency: str = "ILS"
    reason: Optional[str] = None
    order_reference: Optional[str] = None


@dataclass
class RefundResponse:
    """Result of a refund operation."""
    success: bool
    refunded_amount: Decimal = Decimal("0")
    provider_refund_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class TransactionStatusRequest:
    """Lookup key for a status poll; adapters use whichever id they need."""
    provider_request_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None


@dataclass
class ParsedCallback:
    """
    Normalized outcome of a gateway callback, redirect or status poll.

    ``success`` is true only when ``status`` is ``SUCCESS``.
    """
    success: bool
    status: TransactionStatus
    provider_transaction_id: Optional[str] = None
    provider_request_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    order_reference: Optional[str] = None
    approval_number: Optional[str] = None
    card_last_four: Optional[str] = None
    card_brand: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def malformed(cls, message: str, raw_data: Optional[Dict[str, Any]] = None) -> "ParsedCallback":
        return cls(
            success=False,
            status=TransactionStatus.FAILED,
            error_code="malformed_payload",
            error_message=message,
            raw_data=raw_data or {},
        )

    @classmethod
    def unavailable(cls, message: str, raw_data: Optional[Dict[str, Any]] = None) -> "ParsedCallback":
        """A status lookup the gateway could not answer; never a verdict on the payment."""
        return cls(
            success=False,
            status=TransactionStatus.FAILED,
            error_code=STATUS_UNAVAILABLE,
            error_message=message,
            raw_data=raw_data or {},
        )

    @property
    def lookup_failed(self) -> bool:
        return self.error_code == STATUS_UNAVAILABLE

    def merged_with(self, confirmed: "ParsedCallback") -> "ParsedCallback":
        """Overlay a server-confirmed outcome, keeping identifiers it lacks."""
        return replace(
            confirmed,
            provider_transaction_id=confirmed.provider_transaction_id or self.provider_transaction_id,
            provider_request_id=confirmed.provider_request_id or self.provider_request_id,
            amount=confirmed.amount if confirmed.amount is not None else self.amount,
            currency=confirmed.currency or self.currency,
            order_reference=confirmed.order_reference or self.order_reference,
            approval_number=confirmed.approval_number or self.approval_number,
            card_last_four=confirmed.card_last_four or self.card_last_four,
            card_brand=confirmed.card_brand or self.card_brand,
        )


@dataclass
class WebhookValidationResult:
    """
    Outcome of webhook authentication.

    ``requires_confirmation`` means the payload could not be authenticated
    locally and must be confirmed with the gateway before it is trusted.
    """
    is_valid: bool
    error: Optional[str] = None
    requires_confirmation: bool = False


@dataclass
class ConnectionTestResult:
    """Result of an administrative credential check."""
    success: bool
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


class PaymentError(Exception):
    """Payment gateway specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        gateway_response: Optional[Dict[str, Any]] = None,
        transaction_id: Optional[str] = None
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.provider = provider
        self.gateway_response = gateway_response
        self.transaction_id = transaction_id


class GatewayConfigError(PaymentError):
    """Missing or invalid provider credentials."""


class GatewayTransportError(PaymentError):
    """Gateway unreachable, timed out or answered with a server error."""


def to_minor_units(amount: Decimal) -> int:
    """Convert a currency amount to integer minor units (agorot, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return (Decimal(str(value)) / 100).quantize(CENTS)
    except (InvalidOperation, ValueError):
        return None


def to_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def decode_payload(body: Union[bytes, str, Mapping[str, Any], None]) -> Optional[Dict[str, Any]]:
    """
    Decode a callback body into a dict.

    Accepts a mapping, a JSON document or a form-encoded string. Returns None
    when the body cannot be decoded into an object.
    """
    if body is None:
        return None
    if isinstance(body, Mapping):
        return dict(body)
    if isinstance(body, bytes):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError:
            return None
    text = body.strip()
    if not text:
        return None
    try:
        decoded = json.loads(text)
    except ValueError:
        pairs = parse_qsl(text, keep_blank_values=True)
        return dict(pairs) if pairs else None
    if isinstance(decoded, str):
        return decode_payload(decoded)
    return decoded if isinstance(decoded, dict) else None


def compute_hmac(secret: str, message: Union[bytes, str], encoding: str = "hex") -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256)
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    return digest.hexdigest()


def signatures_match(expected: str, received: Optional[str]) -> bool:
    if not received:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), received.strip().encode("utf-8"))


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over any mapping."""
    target = name.lower()
    for key, value in headers.items():
        if key.lower() == target:
            return value
    return None


class PaymentGateway(ABC):
    """Abstract base class for payment gateway adapters."""

    provider_type: ClassVar[PaymentProviderType]
    required_credentials: ClassVar[Tuple[str, ...]] = ()
    status_map: ClassVar[Mapping[str, TransactionStatus]] = {}

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        """
        Initialize the adapter.

        Args:
            http_client: Optional shared client; one is created lazily otherwise
            timeout: Request timeout in seconds for a lazily created client
        """
        self._config: Optional[ProviderConfig] = None
        self._client = http_client
        self._owns_client = http_client is None
        self.timeout = timeout

    def configure(self, config: ProviderConfig) -> None:
        """
        Validate and store provider configuration.

        Args:
            config: Provider credentials and settings

        Raises:
            GatewayConfigError: If a required credential is missing
        """
        missing = [name for name in self.required_credentials if not config.credentials.get(name)]
        if missing:
            raise GatewayConfigError(
                f"Missing credentials: {', '.join(missing)}",
                error_code="missing_credentials",
                provider=self.provider_type.value,
            )
        self._config = config

    @property
    def config(self) -> ProviderConfig:
        if self._config is None:
            raise GatewayConfigError(
                "Provider used before configure()",
                error_code="not_configured",
                provider=self.provider_type.value,
            )
        return self._config

    @property
    def credentials(self) -> Dict[str, Any]:
        return self.config.credentials

    @property
    def settings(self) -> Dict[str, Any]:
        return self.config.settings

    @property
    def test_mode(self) -> bool:
        return self.config.test_mode

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close a client this adapter created itself."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PaymentGateway":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send a request to the gateway.

        Raises:
            GatewayTransportError: On network failure, timeout or a 5xx answer
        """
        provider = self.provider_type.value
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway timeout: %s %s (%s)", method, url, provider)
            raise GatewayTransportError(
                f"{provider} request timed out", error_code="timeout", provider=provider
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("Gateway unreachable: %s %s (%s): %s", method, url, provider, exc)
            raise GatewayTransportError(
                f"{provider} unreachable: {exc}", error_code="unreachable", provider=provider
            ) from exc

        if response.status_code >= 500:
            raise GatewayTransportError(
                f"{provider} server error ({response.status_code})",
                error_code=str(response.status_code),
                provider=provider,
            )
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {"raw": response.text}
        return data if isinstance(data, dict) else {"data": data}

    def map_status(self, code: Any) -> TransactionStatus:
        """Map a provider status code to the canonical status; unknown codes are failures."""
        if code is None:
            return TransactionStatus.FAILED
        return self.status_map.get(str(code).strip(), TransactionStatus.FAILED)

    @abstractmethod
    async def initiate_payment(self, request: InitiatePaymentRequest) -> InitiatePaymentResponse:
        """
        Create a charge, payment page or client token.

        Args:
            request: Amount, line items, customer and return URLs

        Returns:
            InitiatePaymentResponse; business failures are returned, not raised

        Raises:
            GatewayTransportError: If the gateway cannot be reached
        """

    @abstractmethod
    async def refund(self, request: RefundRequest) -> RefundResponse:
        """Refund a captured transaction."""

    @abstractmethod
    async def get_transaction_status(self, request: TransactionStatusRequest) -> ParsedCallback:
        """
        Poll the gateway for the current state of a transaction.

        Returns:
            ParsedCallback with the canonical status

        Raises:
            GatewayTransportError: If the gateway cannot be reached
        """

    @abstractmethod
    def validate_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        """Authenticate a webhook from its raw body and headers."""

    @abstractmethod
    def parse_callback(self, body: Union[bytes, str, Mapping[str, Any]]) -> ParsedCallback:
        """Normalize a webhook body; malformed input yields a failed result."""

    @abstractmethod
    def parse_redirect_params(self, params: Mapping[str, str]) -> ParsedCallback:
        """Normalize the query parameters of a browser return."""

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Check the configured credentials against the gateway."""

    async def confirm(self, parsed: ParsedCallback) -> ParsedCallback:
        """
        Confirm an unauthenticated outcome server-to-server.

        Polls the gateway and overlays its answer on ``parsed``.

        Raises:
            GatewayTransportError: If the gateway cannot be reached
        """
        confirmed = await self.get_transaction_status(
            TransactionStatusRequest(
                provider_request_id=parsed.provider_request_id,
                provider_transaction_id=parsed.provider_transaction_id,
            )
        )
        return parsed.merged_with(confirmed)
