"""
Hosted Fields Payment Gateway Adapter

PayMe-style hosted fields: the storefront tokenizes the card in the browser
and the server charges the token with generate-sale. Initiation returns a
client token instead of a redirect URL.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Union

from .base import (
    ConnectionTestResult,
    CustomerDetails,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
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
    from_minor_units,
    get_header,
    signatures_match,
    to_minor_units,
)

logger = logging.getLogger(__name__)

SANDBOX_URL = "https://sandbox.payme.io/api"
PRODUCTION_URL = "https://live.payme.io/api"
REQUEST_ID_PREFIX = "qp_"
STATUS_CODE_OK = 0
STATUS_CODE_3DS = 5


@dataclass
class SaleResult:
    """Outcome of charging a tokenized card."""
    outcome: ParsedCallback
    requires_3ds: bool = False
    redirect_url: Optional[str] = None


class HostedFieldsAdapter(PaymentGateway):
    """Hosted-fields (PayMe) payment gateway adapter."""

    provider_type = PaymentProviderType.HOSTED_FIELDS
    required_credentials = ("seller_payme_id", "seller_public_key")
    status_map = {
        "completed": TransactionStatus.SUCCESS,
        "success": TransactionStatus.SUCCESS,
        "initial": TransactionStatus.PENDING,
        "pending": TransactionStatus.PENDING,
        "failure": TransactionStatus.FAILED,
        "failed": TransactionStatus.FAILED,
        "refunded": TransactionStatus.CANCELLED,
        "cancelled": TransactionStatus.CANCELLED,
    }

    @property
    def base_url(self) -> str:
        return SANDBOX_URL if self.test_mode else PRODUCTION_URL

    def map_status(self, code: Any) -> TransactionStatus:
        return super().map_status(str(code).lower() if code is not None else None)

    @staticmethod
    def request_id_for(order_reference: str) -> str:
        return f"{REQUEST_ID_PREFIX}{order_reference}"

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST",
            f"{self.base_url}{endpoint}",
            json={"seller_payme_id": self.credentials["seller_payme_id"], **payload},
            headers={"PayMe-Merchant-Key": self.credentials["seller_payme_id"]},
        )
        return self._json(response)

    @staticmethod
    def _error(data: Dict[str, Any], default: str) -> Dict[str, str]:
        code = data.get("status_error_code", data.get("status_code"))
        return {
            "error_code": str(code) if code is not None else "HOSTED_FIELDS_ERROR",
            "error_message": data.get("status_error_details") or data.get("status_message") or default,
        }

    async def initiate_payment(self, request: InitiatePaymentRequest) -> InitiatePaymentResponse:
        token = {
            "type": "hosted_fields",
            "public_key": self.credentials["seller_public_key"],
            "test_mode": self.test_mode,
            "amount": f"{request.amount:.2f}",
            "currency": request.currency or "ILS",
            "order_reference": request.order_reference,
        }
        return InitiatePaymentResponse(
            success=True,
            provider_request_id=self.request_id_for(request.order_reference),
            client_token=json.dumps(token),
            raw_response=token,
        )

    async def generate_sale(
        self,
        *,
        buyer_key: str,
        amount: Decimal,
        currency: str,
        order_reference: str,
        product_name: str,
        customer: Optional[CustomerDetails] = None,
        callback_url: Optional[str] = None,
        return_url: Optional[str] = None,
        installments: int = 1,
    ) -> SaleResult:
        """
        Charge a card token produced by the hosted fields.

        Args:
            buyer_key: Token returned by browser-side tokenization
            amount: Amount in currency units
            currency: ISO currency code
            order_reference: Our reference, echoed back as ``transaction_id``
            product_name: Text shown on the buyer's statement
            customer: Optional buyer details
            callback_url: Optional webhook URL for asynchronous updates
            return_url: Optional URL for the 3-D Secure return
            installments: Number of installments

        Returns:
            SaleResult; a 3-D Secure challenge is reported with ``requires_3ds``
        """
        payload: Dict[str, Any] = {
            "sale_price": to_minor_units(amount),
            "currency": currency,
            "product_name": product_name,
            "transaction_id": order_reference,
            "buyer_key": buyer_key,
            "installments": str(installments),
            "sale_type": "sale",
            "sale_payment_method": "credit-card",
            "language": "he",
        }
        if customer is not None:
            payload.update(
                {"sale_email": customer.email, "sale_name": customer.name or "", "sale_mobile": customer.phone or ""}
            )
        if callback_url:
            payload["sale_callback_url"] = callback_url
        if return_url:
            payload["sale_return_url"] = return_url

        data = await self._post("/generate-sale", payload)
        status_code = data.get("status_code")
        sale_id = data.get("payme_sale_id")
        base = {
            "provider_transaction_id": sale_id,
            "provider_request_id": self.request_id_for(order_reference),
            "amount": amount,
            "currency": currency,
            "order_reference": order_reference,
            "raw_data": data,
        }

        if status_code == STATUS_CODE_3DS and data.get("redirect_url"):
            return SaleResult(
                outcome=ParsedCallback(success=False, status=TransactionStatus.PENDING, **base),
                requires_3ds=True,
                redirect_url=data["redirect_url"],
            )
        if status_code == STATUS_CODE_OK or sale_id:
            return SaleResult(
                outcome=ParsedCallback(
                    success=True,
                    status=TransactionStatus.SUCCESS,
                    approval_number=data.get("transaction_cc_auth_number") or data.get("payme_transaction_auth_number"),
                    **base,
                )
            )
        logger.warning("Hosted fields sale rejected for %s", order_reference)
        return SaleResult(
            outcome=ParsedCallback(
                success=False,
                status=TransactionStatus.FAILED,
                **self._error(data, "Payment failed"),
                **base,
            )
        )

    async def refund(self, request: RefundRequest) -> RefundResponse:
        data = await self._post(
            "/refund-sale",
            {
                "payme_sale_id": request.provider_transaction_id,
                "sale_refund_amount": to_minor_units(request.amount),
                "language": "he",
            },
        )
        if data.get("status_code") == STATUS_CODE_OK:
            return RefundResponse(
                success=True,
                refunded_amount=from_minor_units(data.get("payme_transaction_total")) or request.amount,
                provider_refund_id=data.get("payme_transaction_id"),
                raw_response=data,
            )
        return RefundResponse(success=False, raw_response=data, **self._error(data, "Refund failed"))

    async def get_transaction_status(self, request: TransactionStatusRequest) -> ParsedCallback:
        sale_id = request.provider_transaction_id
        if not sale_id:
            return ParsedCallback.unavailable("A sale id is required")

        data = await self._post("/get-sales", {"payme_sale_id": sale_id})
        if data.get("status_code") != STATUS_CODE_OK:
            return ParsedCallback.unavailable(self._error(data, "Failed to get status")["error_message"], raw_data=data)

        sales = data.get("items")
        sale = sales[0] if isinstance(sales, list) and sales else data
        status = self.map_status(sale.get("sale_status"))
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=sale.get("payme_sale_id") or sale_id,
            provider_request_id=request.provider_request_id,
            amount=from_minor_units(sale.get("sale_price", sale.get("price"))),
            currency=sale.get("currency"),
            order_reference=sale.get("transaction_id"),
            approval_number=sale.get("transaction_auth_number"),
            card_last_four=sale.get("four_digits"),
            card_brand=sale.get("card_brand"),
            raw_data=data,
        )

    def validate_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        data = decode_payload(body)
        if data is None:
            return WebhookValidationResult(is_valid=False, error="Invalid body")
        if not data.get("payme_sale_id") or not data.get("seller_payme_id"):
            return WebhookValidationResult(is_valid=False, error="Missing required fields")
        if not signatures_match(self.credentials["seller_payme_id"], str(data["seller_payme_id"])):
            return WebhookValidationResult(is_valid=False, error="Seller ID mismatch")

        secret = self.credentials.get("seller_secret")
        if not secret:
            return WebhookValidationResult(is_valid=True, requires_confirmation=True)
        if not signatures_match(compute_hmac(secret, body), get_header(headers, "x-payme-signature")):
            return WebhookValidationResult(is_valid=False, error="Invalid signature")
        return WebhookValidationResult(is_valid=True)

    def parse_callback(self, body: Union[bytes, str, Mapping[str, Any]]) -> ParsedCallback:
        data = decode_payload(body)
        if data is None:
            return ParsedCallback.malformed("Unreadable hosted fields callback body")

        status = self.map_status(data.get("sale_status"))
        reference = data.get("transaction_id")
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=data.get("payme_sale_id"),
            provider_request_id=self.request_id_for(reference) if reference else None,
            amount=from_minor_units(data.get("sale_price")),
            currency=data.get("sale_currency") or "ILS",
            order_reference=reference,
            approval_number=data.get("transaction_auth_number"),
            card_last_four=data.get("four_digits"),
            card_brand=data.get("card_brand"),
            error_code=data.get("status_error_code"),
            error_message=data.get("status_error_details"),
            raw_data=data,
        )

    def parse_redirect_params(self, params: Mapping[str, str]) -> ParsedCallback:
        sale_id = params.get("payme_sale_id") or params.get("sale_id")
        code = params.get("status_code") or params.get("status")
        success = code in ("0", "000", "success")
        reference = params.get("transaction_id")
        return ParsedCallback(
            success=success,
            status=TransactionStatus.SUCCESS if success else TransactionStatus.FAILED,
            provider_transaction_id=sale_id,
            provider_request_id=self.request_id_for(reference) if reference else None,
            order_reference=reference,
            error_code=None if success else code,
            error_message=params.get("error_message"),
            raw_data=dict(params),
        )

    async def test_connection(self) -> ConnectionTestResult:
        data = await self._post("/get-sales", {"page_size": 1})
        if data.get("status_code") == STATUS_CODE_OK:
            return ConnectionTestResult(success=True, message="Connected to hosted fields gateway")
        return ConnectionTestResult(
            success=False,
            message=self._error(data, "Gateway rejected the seller credentials")["error_message"],
            details=data,
        )
