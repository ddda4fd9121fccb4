"""
PayPal Payment Gateway Adapter

Provides integration with the PayPal Orders v2 API. Orders are created with
intent CAPTURE and captured after the buyer approves and returns.
"""

import logging
import uuid
import zlib
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from .base import (
    ConnectionTestResult,
    GatewayConfigError,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    LineItemKind,
    ParsedCallback,
    PaymentGateway,
    PaymentProviderType,
    RefundRequest,
    RefundResponse,
    TransactionStatus,
    TransactionStatusRequest,
    WebhookValidationResult,
    compute_hmac,
    decode_payload,
    get_header,
    signatures_match,
    to_decimal,
)

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://api-m.sandbox.paypal.com"
PRODUCTION_URL = "https://api-m.paypal.com"
TOKEN_EXPIRY_BUFFER = timedelta(seconds=60)

EVENT_STATUS = {
    "CHECKOUT.ORDER.APPROVED": TransactionStatus.PROCESSING,
    "PAYMENT.CAPTURE.COMPLETED": TransactionStatus.SUCCESS,
    "PAYMENT.CAPTURE.DENIED": TransactionStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": TransactionStatus.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": TransactionStatus.CANCELLED,
    "CHECKOUT.ORDER.VOIDED": TransactionStatus.CANCELLED,
}


class PayPalAuthError(GatewayConfigError):
    """OAuth token request rejected by PayPal."""

    def __init__(self, status_code: int, body: str):
        super().__init__(
            f"PayPal auth failed: {status_code}",
            error_code="auth_failed",
            provider=PaymentProviderType.PAYPAL.value,
            gateway_response={"body": body[:500]},
        )


def _money(value: Decimal, currency: str) -> Dict[str, str]:
    return {"currency_code": currency, "value": f"{value:.2f}"}


def _object(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


class PayPalAdapter(PaymentGateway):
    """PayPal payment gateway adapter."""

    provider_type = PaymentProviderType.PAYPAL
    required_credentials = ("client_id", "client_secret")
    status_map = {
        "CREATED": TransactionStatus.PENDING,
        "SAVED": TransactionStatus.PENDING,
        "PAYER_ACTION_REQUIRED": TransactionStatus.PENDING,
        "APPROVED": TransactionStatus.PROCESSING,
        "COMPLETED": TransactionStatus.SUCCESS,
        "VOIDED": TransactionStatus.CANCELLED,
    }

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        super().__init__(http_client=http_client, timeout=timeout)
        self._access_token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    @property
    def base_url(self) -> str:
        return SANDBOX_URL if self.test_mode else PRODUCTION_URL

    async def _get_access_token(self) -> str:
        """Get or refresh the OAuth access token."""
        now = datetime.now(timezone.utc)
        if self._access_token and self._token_expires_at and now < self._token_expires_at:
            return self._access_token

        response = await self._request(
            "POST",
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.credentials["client_id"], self.credentials["client_secret"]),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            raise PayPalAuthError(response.status_code, response.text)

        token_data = response.json()
        self._access_token = token_data["access_token"]
        self._token_expires_at = now + timedelta(seconds=int(token_data.get("expires_in", 0))) - TOKEN_EXPIRY_BUFFER
        return self._access_token

    async def _api(self, method: str, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> httpx.Response:
        token = await self._get_access_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "PayPal-Request-Id": str(uuid.uuid4()),
        }
        return await self._request(method, f"{self.base_url}{endpoint}", json=payload, headers=headers)

    @staticmethod
    def _error_message(data: Dict[str, Any], default: str) -> str:
        details = data.get("details") or []
        if data.get("message"):
            return data["message"]
        if details and isinstance(details[0], dict) and details[0].get("description"):
            return details[0]["description"]
        return default

    def build_order(self, request: InitiatePaymentRequest) -> Dict[str, Any]:
        """Build the create-order body with an amount breakdown PayPal can verify."""
        currency = request.currency or "ILS"
        products = request.lines_of_kind(LineItemKind.PRODUCT)
        item_total = sum((line.total for line in products), Decimal("0"))
        shipping = sum((line.total for line in request.lines_of_kind(LineItemKind.SHIPPING)), Decimal("0"))
        discount = -sum((line.total for line in request.lines_of_kind(LineItemKind.DISCOUNT)), Decimal("0"))

        breakdown: Dict[str, Any] = {"item_total": _money(item_total, currency)}
        if shipping > 0:
            breakdown["shipping"] = _money(shipping, currency)
        if discount > 0:
            breakdown["discount"] = _money(discount, currency)

        purchase_unit: Dict[str, Any] = {
            "reference_id": request.order_reference,
            "custom_id": request.order_reference,
            "description": f"Order {request.order_reference}"[:127],
            "amount": {**_money(request.amount, currency), "breakdown": breakdown},
            "items": [
                {
                    "name": line.name[:127],
                    "quantity": str(line.quantity),
                    "unit_amount": _money(line.unit_price, currency),
                    "category": "PHYSICAL_GOODS",
                    **({"sku": line.sku[:127]} if line.sku else {}),
                }
                for line in products
            ],
        }

        customer = request.customer
        if customer.address and customer.city:
            purchase_unit["shipping"] = {
                "name": {"full_name": customer.name or ""},
                "address": {
                    "address_line_1": customer.address,
                    "admin_area_2": customer.city,
                    "postal_code": customer.postal_code or "",
                    "country_code": "IL",
                },
            }

        return {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "payment_source": {
                "paypal": {
                    "email_address": customer.email,
                    "experience_context": {
                        "payment_method_preference": "IMMEDIATE_PAYMENT_REQUIRED",
                        "locale": "en-US" if request.language == "en" else "he-IL",
                        "shipping_preference": "SET_PROVIDED_ADDRESS" if "shipping" in purchase_unit else "NO_SHIPPING",
                        "user_action": "PAY_NOW",
                        "return_url": request.success_url,
                        "cancel_url": request.cancel_url or request.failure_url,
                    },
                }
            },
        }

    async def initiate_payment(self, request: InitiatePaymentRequest) -> InitiatePaymentResponse:
        response = await self._api("POST", "/v2/checkout/orders", self.build_order(request))
        data = self._json(response)
        if response.status_code >= 400:
            return InitiatePaymentResponse.failure(
                error_code=data.get("name") or "PAYPAL_ERROR",
                error_message=self._error_message(data, f"PayPal API error: {response.status_code}"),
                raw_response=data,
            )

        links = {link.get("rel"): link.get("href") for link in data.get("links") or []}
        approval_url = links.get("payer-action") or links.get("approve")
        if not approval_url:
            logger.error("No approval URL in PayPal response for %s", request.order_reference)
            return InitiatePaymentResponse.failure(
                error_code="NO_APPROVAL_URL",
                error_message="PayPal did not return an approval URL",
                raw_response=data,
            )
        return InitiatePaymentResponse(
            success=True,
            payment_url=approval_url,
            provider_request_id=data.get("id"),
            raw_response=data,
        )

    async def capture_order(self, order_id: str) -> ParsedCallback:
        """
        Capture an approved order.

        Args:
            order_id: PayPal order id returned at initiation

        Returns:
            ParsedCallback carrying the capture id as provider transaction id
        """
        response = await self._api("POST", f"/v2/checkout/orders/{order_id}/capture", {})
        data = self._json(response)
        if response.status_code >= 400:
            return ParsedCallback(
                success=False,
                status=TransactionStatus.FAILED,
                provider_request_id=order_id,
                error_code=data.get("name") or "CAPTURE_FAILED",
                error_message=self._error_message(data, "PayPal capture failed"),
                raw_data=data,
            )

        unit = (data.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        capture = captures[0] if captures else {}
        status = self.map_status(data.get("status"))
        if status is TransactionStatus.SUCCESS and not capture:
            status = TransactionStatus.FAILED
        amount = capture.get("amount") or {}
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=capture.get("id"),
            provider_request_id=data.get("id") or order_id,
            amount=to_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            order_reference=capture.get("custom_id") or unit.get("reference_id"),
            error_code=None if status is TransactionStatus.SUCCESS else data.get("status") or "CAPTURE_FAILED",
            raw_data=data,
        )

    async def refund(self, request: RefundRequest) -> RefundResponse:
        payload: Dict[str, Any] = {"amount": _money(request.amount, request.currency)}
        if request.reason:
            payload["note_to_payer"] = request.reason[:255]
        response = await self._api("POST", f"/v2/payments/captures/{request.provider_transaction_id}/refund", payload)
        data = self._json(response)
        if response.status_code < 400 and data.get("status") in ("COMPLETED", "PENDING"):
            amount = data.get("amount") or {}
            return RefundResponse(
                success=True,
                refunded_amount=to_decimal(amount.get("value")) or request.amount,
                provider_refund_id=data.get("id"),
                raw_response=data,
            )
        return RefundResponse(
            success=False,
            error_code=data.get("status") or data.get("name") or "REFUND_FAILED",
            error_message=self._error_message(data, f"Refund status: {data.get('status')}"),
            raw_response=data,
        )

    async def get_transaction_status(self, request: TransactionStatusRequest) -> ParsedCallback:
        order_id = request.provider_request_id or request.provider_transaction_id
        if not order_id:
            return ParsedCallback.unavailable("Order id is required")

        response = await self._api("GET", f"/v2/checkout/orders/{order_id}")
        data = self._json(response)
        if response.status_code >= 400:
            return ParsedCallback.unavailable(self._error_message(data, "PayPal order lookup failed"), raw_data=data)

        status = self.map_status(data.get("status"))
        unit = (data.get("purchase_units") or [{}])[0]
        amount = unit.get("amount") or {}
        card = (data.get("payment_source") or {}).get("card") or {}
        captures = (unit.get("payments") or {}).get("captures") or []
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=captures[0].get("id") if captures else None,
            provider_request_id=data.get("id") or order_id,
            amount=to_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            order_reference=unit.get("custom_id") or unit.get("reference_id"),
            card_last_four=card.get("last_digits"),
            card_brand=card.get("brand"),
            raw_data=data,
        )

    def expected_signature(self, body: bytes, transmission_id: str, transmission_time: str) -> str:
        message = "|".join(
            [
                transmission_id,
                transmission_time,
                self.credentials.get("webhook_id") or "",
                str(zlib.crc32(body)),
            ]
        )
        return compute_hmac(self.credentials["webhook_secret"], message, encoding="base64")

    def validate_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        transmission_id = get_header(headers, "paypal-transmission-id")
        transmission_time = get_header(headers, "paypal-transmission-time")
        if not transmission_id or not transmission_time:
            return WebhookValidationResult(is_valid=False, error="Missing PayPal webhook headers")

        if not self.credentials.get("webhook_secret"):
            return WebhookValidationResult(is_valid=True, requires_confirmation=True)

        expected = self.expected_signature(body, transmission_id, transmission_time)
        if not signatures_match(expected, get_header(headers, "paypal-transmission-sig")):
            return WebhookValidationResult(is_valid=False, error="Invalid transmission signature")
        return WebhookValidationResult(is_valid=True)

    def parse_callback(self, body: Union[bytes, str, Mapping[str, Any]]) -> ParsedCallback:
        data = decode_payload(body)
        if data is None or not isinstance(data.get("resource"), dict):
            return ParsedCallback.malformed("Unreadable PayPal webhook event", raw_data=data)

        resource = data["resource"]
        event_type = data.get("event_type")
        event_type = event_type if isinstance(event_type, str) else ""
        status = EVENT_STATUS.get(event_type, TransactionStatus.FAILED)
        amount = _object(resource.get("amount"))
        related = _object(_object(resource.get("supplementary_data")).get("related_ids"))

        if event_type.startswith("CHECKOUT.ORDER."):
            order_id, capture_id = resource.get("id"), None
        else:
            order_id, capture_id = related.get("order_id"), resource.get("id")

        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=capture_id,
            provider_request_id=order_id,
            amount=to_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            order_reference=resource.get("custom_id") or resource.get("invoice_id"),
            error_code=None if event_type in EVENT_STATUS else "unknown_event",
            raw_data=data,
        )

    def parse_redirect_params(self, params: Mapping[str, str]) -> ParsedCallback:
        token = params.get("token")
        payer_id = params.get("PayerID")
        if token and payer_id and params.get("cancel") != "true":
            status = TransactionStatus.PROCESSING
        elif token:
            status = TransactionStatus.CANCELLED
        else:
            status = TransactionStatus.PENDING
        cancelled = status is TransactionStatus.CANCELLED
        return ParsedCallback(
            success=False,
            status=status,
            provider_request_id=token,
            order_reference=params.get("ref") or params.get("orderRef"),
            error_code="CANCELLED" if cancelled else None,
            error_message="Payment was cancelled" if cancelled else None,
            raw_data=dict(params),
        )

    async def confirm(self, parsed: ParsedCallback) -> ParsedCallback:
        """Capture approved orders; other outcomes are confirmed by polling."""
        if parsed.status is TransactionStatus.PROCESSING and parsed.provider_request_id:
            captured = await self.capture_order(parsed.provider_request_id)
            return parsed.merged_with(captured)
        return await super().confirm(parsed)

    async def test_connection(self) -> ConnectionTestResult:
        try:
            await self._get_access_token()
        except PayPalAuthError as exc:
            return ConnectionTestResult(success=False, message=exc.error_message)
        return ConnectionTestResult(success=True, message="Connected to PayPal")

