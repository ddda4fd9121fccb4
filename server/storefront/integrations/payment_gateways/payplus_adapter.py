"""
PayPlus Payment Gateway Adapter

Hosted payment pages through the PayPlus REST API. Webhooks are signed
with a base64 HMAC-SHA256 of the raw body in the ``hash`` header.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Union

from .base import (
    ConnectionTestResult,
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

STAGING_URL = "https://restapidev.payplus.co.il/api/v1.0"
PRODUCTION_URL = "https://restapi.payplus.co.il/api/v1.0"
WEBHOOK_USER_AGENT = "PayPlus"


class PayPlusAdapter(PaymentGateway):
    """PayPlus payment gateway adapter."""

    provider_type = PaymentProviderType.PAYPLUS
    required_credentials = ("api_key", "secret_key", "payment_page_uid")
    status_map = {
        "000": TransactionStatus.SUCCESS,
        "001": TransactionStatus.PROCESSING,
        "002": TransactionStatus.PENDING,
        "003": TransactionStatus.FAILED,
        "004": TransactionStatus.CANCELLED,
    }

    @property
    def base_url(self) -> str:
        return STAGING_URL if self.test_mode else PRODUCTION_URL

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-key": self.credentials["api_key"],
            "secret-key": self.credentials["secret_key"],
        }

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request(
            "POST", f"{self.base_url}{endpoint}", json=payload, headers=self._headers()
        )
        return self._json(response)

    @staticmethod
    def _results(data: Dict[str, Any]) -> Dict[str, Any]:
        results = data.get("results")
        return results if isinstance(results, dict) else {}

    def _is_success(self, data: Dict[str, Any]) -> bool:
        return self._results(data).get("status") == "success" and isinstance(data.get("data"), dict)

    def _error_fields(self, data: Dict[str, Any], default_code: str) -> Dict[str, Optional[str]]:
        results = self._results(data)
        code = results.get("code")
        return {
            "error_code": str(code) if code is not None else default_code,
            "error_message": results.get("description") or "PayPlus request failed",
        }

    def build_payload(self, request: InitiatePaymentRequest) -> Dict[str, Any]:
        """Build the generateLink body. Shipping and discount travel as ordinary lines."""
        customer = request.customer
        items = []
        for item in request.items:
            line: Dict[str, Any] = {
                "name": item.name,
                "quantity": item.quantity,
                "price": float(item.unit_price),
            }
            if item.kind is LineItemKind.SHIPPING:
                line["shipping"] = True
            items.append(line)

        return {
            "payment_page_uid": self.credentials["payment_page_uid"],
            "charge_method": 1,
            "amount": float(request.amount),
            "currency_code": request.currency or "ILS",
            "language_code": request.language,
            "sendEmailApproval": True,
            "sendEmailFailure": False,
            "refURL_success": request.success_url,
            "refURL_failure": request.failure_url,
            "refURL_cancel": request.cancel_url or request.failure_url,
            "refURL_callback": request.callback_url,
            "send_failure_callback": True,
            "more_info": request.order_reference,
            "customer": {
                "customer_name": customer.name or "",
                "email": customer.email,
                "phone": customer.phone or "",
                "address": customer.address or "",
                "city": customer.city or "",
                "postal_code": customer.postal_code or "",
                "country_iso": "IL",
            },
            "items": items,
            "expiry_datetime": "30",
        }

    async def initiate_payment(self, request: InitiatePaymentRequest) -> InitiatePaymentResponse:
        data = await self._post("/PaymentPages/generateLink", self.build_payload(request))
        if self._is_success(data):
            link = data["data"]
            logger.info("PayPlus payment page created for %s", request.order_reference)
            return InitiatePaymentResponse(
                success=True,
                payment_url=link.get("payment_page_link"),
                provider_request_id=link.get("page_request_uid"),
                raw_response=data,
            )
        errors = self._error_fields(data, "PAYPLUS_ERROR")
        logger.warning("PayPlus generateLink rejected: %s", errors["error_message"])
        return InitiatePaymentResponse.failure(raw_response=data, **errors)

    async def refund(self, request: RefundRequest) -> RefundResponse:
        payload = {
            "transaction_uid": request.provider_transaction_id,
            "amount": float(request.amount),
            "more_info": request.reason or f"Refund for {request.order_reference or request.provider_transaction_id}",
        }
        data = await self._post("/Transactions/RefundByTransactionUID", payload)
        if self._is_success(data):
            refund = data["data"]
            return RefundResponse(
                success=True,
                refunded_amount=to_decimal(refund.get("amount")) or request.amount,
                provider_refund_id=refund.get("transaction_uid"),
                raw_response=data,
            )
        return RefundResponse(success=False, raw_response=data, **self._error_fields(data, "PAYPLUS_REFUND_ERROR"))

    async def get_transaction_status(self, request: TransactionStatusRequest) -> ParsedCallback:
        if request.provider_request_id:
            payload = {"payment_request_uid": request.provider_request_id}
        elif request.provider_transaction_id:
            payload = {"transaction_uid": request.provider_transaction_id}
        else:
            return ParsedCallback.unavailable("Either a request id or a transaction id is required")

        data = await self._post("/PaymentPages/ipn", payload)
        if not self._is_success(data):
            errors = self._error_fields(data, "PAYPLUS_STATUS_ERROR")
            return ParsedCallback.unavailable(errors["error_message"], raw_data=data)

        ipn = data["data"]
        status = self.map_status(ipn.get("status_code"))
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=ipn.get("transaction_uid"),
            provider_request_id=ipn.get("page_request_uid") or request.provider_request_id,
            amount=to_decimal(ipn.get("amount")),
            currency=ipn.get("currency_code"),
            order_reference=ipn.get("more_info"),
            approval_number=ipn.get("approval_num"),
            card_last_four=ipn.get("four_digits"),
            card_brand=ipn.get("brand_name"),
            raw_data=data,
        )

    def validate_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        if get_header(headers, "user-agent") != WEBHOOK_USER_AGENT:
            return WebhookValidationResult(is_valid=False, error="Invalid User-Agent header")

        received = get_header(headers, "hash")
        if not received:
            return WebhookValidationResult(is_valid=False, error="Missing hash header")

        expected = compute_hmac(self.credentials["secret_key"], body, encoding="base64")
        if not signatures_match(expected, received):
            return WebhookValidationResult(is_valid=False, error="Invalid hash signature")
        return WebhookValidationResult(is_valid=True)

    def parse_callback(self, body: Union[bytes, str, Mapping[str, Any]]) -> ParsedCallback:
        data = decode_payload(body)
        if data is None:
            logger.warning("PayPlus callback body could not be decoded")
            return ParsedCallback.malformed("Unreadable PayPlus callback body")

        transaction = data.get("transaction")
        if isinstance(transaction, dict):
            nested = data.get("data") if isinstance(data.get("data"), dict) else {}
            card = nested.get("card_information")
            card = card if isinstance(card, dict) else {}
            brand_id = card.get("brand_id")
            fields = {
                "status_code": transaction.get("status_code"),
                "provider_transaction_id": transaction.get("uid"),
                "provider_request_id": transaction.get("payment_page_request_uid"),
                "order_reference": transaction.get("more_info"),
                "amount": transaction.get("amount"),
                "currency": transaction.get("currency"),
                "approval_number": transaction.get("approval_number") or transaction.get("voucher_number"),
                "card_last_four": card.get("four_digits"),
                "card_brand": str(brand_id) if brand_id is not None else None,
            }
        else:
            fields = {
                "status_code": data.get("status_code"),
                "provider_transaction_id": data.get("transaction_uid"),
                "provider_request_id": data.get("page_request_uid"),
                "order_reference": data.get("more_info"),
                "amount": data.get("amount"),
                "currency": data.get("currency_code"),
                "approval_number": data.get("approval_num") or data.get("voucher_num"),
                "card_last_four": data.get("four_digits"),
                "card_brand": data.get("brand_name"),
            }

        error = data.get("error") if isinstance(data.get("error"), dict) else {}
        status = self.map_status(fields.pop("status_code"))
        amount = to_decimal(fields.pop("amount"))
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            amount=amount,
            error_code=error.get("error_code"),
            error_message=error.get("error_message"),
            raw_data=data,
            **fields,
        )

    def parse_redirect_params(self, params: Mapping[str, str]) -> ParsedCallback:
        status = self.map_status(params.get("status_code"))
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=params.get("transaction_uid"),
            provider_request_id=params.get("page_request_uid"),
            order_reference=params.get("more_info") or params.get("ref"),
            approval_number=params.get("approval_num"),
            card_last_four=params.get("four_digits"),
            card_brand=params.get("brand_name"),
            raw_data=dict(params),
        )

    async def test_connection(self) -> ConnectionTestResult:
        payload = {
            "payment_page_uid": self.credentials["payment_page_uid"],
            "charge_method": 1,
            "amount": 1,
            "currency_code": "ILS",
            "language_code": "he",
            "expiry_datetime": "1",
            "customer": {"customer_name": "Test", "email": "test@test.com"},
            "items": [{"name": "Test Connection", "quantity": 1, "price": 1}],
        }
        data = await self._post("/PaymentPages/generateLink", payload)
        if self._results(data).get("status") == "success":
            return ConnectionTestResult(success=True, message="Connected to PayPlus")
        return ConnectionTestResult(
            success=False,
            message=self._results(data).get("description") or "PayPlus rejected the credentials",
            details=data,
        )
