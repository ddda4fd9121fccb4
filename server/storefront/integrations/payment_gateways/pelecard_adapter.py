"""
Pelecard Payment Gateway Adapter

Redirect payment pages through PaymentGW plus the Services REST API for
refunds. Pelecard does not sign its redirects, so callbacks are confirmed
server-to-server through GetTransaction unless a webhook secret is set.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qs, urlparse

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
    from_minor_units,
    get_header,
    signatures_match,
    to_minor_units,
)

logger = logging.getLogger(__name__)

GATEWAY_URL = "https://gateway21.pelecard.biz/PaymentGW"
SERVICES_URL = "https://gateway21.pelecard.biz/services"
SANDBOX_SERVICES_URL = "https://gateway21.pelecard.biz/SandboxServices"

CURRENCY_CODES = {"ILS": "1", "USD": "2", "EUR": "3", "GBP": "4"}
CARD_BRANDS = {
    "1": "visa",
    "2": "mastercard",
    "3": "diners",
    "4": "amex",
    "5": "jcb",
    "6": "isracard",
}


class PelecardAdapter(PaymentGateway):
    """Pelecard payment gateway adapter."""

    provider_type = PaymentProviderType.PELECARD
    required_credentials = ("terminal", "user", "password")
    status_map = {
        "000": TransactionStatus.SUCCESS,
        "001": TransactionStatus.PROCESSING,
        "002": TransactionStatus.PENDING,
    }

    @property
    def services_url(self) -> str:
        return SANDBOX_SERVICES_URL if self.test_mode else SERVICES_URL

    def _auth(self) -> Dict[str, str]:
        return {
            "terminal": self.credentials["terminal"],
            "user": self.credentials["user"],
            "password": self.credentials["password"],
        }

    async def _gateway_post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", f"{GATEWAY_URL}{endpoint}", json=payload)
        return self._json(response)

    async def _services_post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "terminalNumber": self.credentials["terminal"],
            "user": self.credentials["user"],
            "password": self.credentials["password"],
            "shopNumber": self.credentials.get("shop_number") or "001",
            **payload,
        }
        response = await self._request("POST", f"{self.services_url}/{endpoint}", json=body)
        return self._json(response)

    @staticmethod
    def map_card_brand(code: Optional[str]) -> Optional[str]:
        if not code:
            return None
        return CARD_BRANDS.get(str(code), str(code))

    def build_invoice(self, request: InitiatePaymentRequest) -> Optional[Dict[str, Any]]:
        """
        Build the automatic invoice block when ``auto_invoice`` is enabled.

        Products and shipping are listed at full price in agorot, followed by
        one negative discount line, so the invoice lines sum exactly to the
        amount charged.

        Returns:
            The PayperParameters block, or None when invoicing is disabled
        """
        if not self.settings.get("auto_invoice"):
            return None

        paid = to_minor_units(request.amount)
        lines: List[Dict[str, str]] = []
        for item in request.items:
            if item.kind is LineItemKind.DISCOUNT or item.unit_price <= 0:
                continue
            lines.append(
                {
                    "description": item.name,
                    "quantity": str(item.quantity),
                    "price_per_unit": str(to_minor_units(item.unit_price)),
                    "include_vat": "true",
                    "No_vat": "false",
                    "catalog_id": item.sku or "",
                }
            )

        listed = sum(int(line["price_per_unit"]) * int(line["quantity"]) for line in lines)
        discount = listed - paid
        if discount > 0:
            code = request.metadata.get("discount_code")
            lines.append(
                {
                    "description": f"הנחה ({code})" if code else "הנחה",
                    "quantity": "1",
                    "price_per_unit": str(-discount),
                    "include_vat": "true",
                    "No_vat": "false",
                    "catalog_id": "",
                }
            )
        if not lines:
            lines.append(
                {
                    "description": f"הזמנה #{request.order_reference}",
                    "quantity": "1",
                    "price_per_unit": str(paid),
                    "include_vat": "true",
                    "No_vat": "false",
                    "catalog_id": "",
                }
            )

        customer = request.customer
        return {
            "typeDocument": "Invoice-Receipt",
            "DataPayper": {
                "document_lang": self.settings.get("invoice_lang", "hb"),
                "customer_unique_id": customer.phone or "",
                "customer_mail": customer.email,
                "customer_name": customer.name or "",
                "customer_mobile": customer.phone or "",
                "customer_address": customer.address or "",
                "document_subject": f"הזמנה #{request.order_reference}",
                "document_no_vat": "false",
                "document_rounded": "false",
                "send_by_mail": "true",
                "income_id": -100000000,
                "invoice_lines": lines,
                "receipt_lines": [
                    {
                        "payment_type": "Cc",
                        "date": date.today().strftime("%d-%m-%Y"),
                        "cc_num": "0000",
                        "cc_payment_type": "1",
                        "num_of_payments": "1",
                        "amount": str(paid),
                    }
                ],
            },
        }

    def build_payload(self, request: InitiatePaymentRequest) -> Dict[str, Any]:
        customer = request.customer
        payload: Dict[str, Any] = {
            **self._auth(),
            "GoodURL": request.success_url,
            "ErrorURL": request.failure_url,
            "CancelURL": request.cancel_url or request.failure_url,
            "ActionType": "J4",
            "Currency": CURRENCY_CODES.get(request.currency or "ILS", "1"),
            "Total": str(to_minor_units(request.amount)),
            "Language": (request.language or "he").upper(),
            "CustomerIdField": "optional",
            "Cvv2Field": "must",
            "MaxPayments": str(self.settings.get("max_payments", 12)),
            "MinPayments": "1",
            "UserKey": request.order_reference,
            "ParamX": request.order_reference,
            "CustomerName": customer.name or "",
            "CustomerEmail": customer.email,
            "CustomerPhone": customer.phone or "",
            "CardHolderName": customer.name or "",
        }
        invoice = self.build_invoice(request)
        if invoice is not None:
            payload["PayperParameters"] = invoice
        return payload

    async def initiate_payment(self, request: InitiatePaymentRequest) -> InitiatePaymentResponse:
        data = await self._gateway_post("/init", self.build_payload(request))
        url = data.get("URL")
        if url:
            transaction_id = data.get("transactionID")
            if not transaction_id:
                query = parse_qs(urlparse(url).query)
                transaction_id = (query.get("transactionId") or [None])[0]
            if not transaction_id:
                logger.warning("Pelecard init returned a payment page without a transaction id")
                return InitiatePaymentResponse.failure(
                    error_code="NO_TRANSACTION_ID",
                    error_message="Pelecard did not return a transaction id",
                    raw_response=data,
                )
            return InitiatePaymentResponse(
                success=True,
                payment_url=url,
                provider_request_id=transaction_id,
                raw_response=data,
            )

        error = data.get("Error") if isinstance(data.get("Error"), dict) else {}
        code = error.get("ErrCode")
        logger.warning("Pelecard init rejected: %s", error.get("ErrMsg"))
        return InitiatePaymentResponse.failure(
            error_code=str(code) if code is not None else "PELECARD_ERROR",
            error_message=error.get("ErrMsg") or "Failed to initialize payment",
            raw_response=data,
        )

    async def refund(self, request: RefundRequest) -> RefundResponse:
        data = await self._services_post(
            "DeleteTran",
            {
                "PelecardTransactionId": request.provider_transaction_id,
                "total": str(to_minor_units(request.amount)),
                "currency": CURRENCY_CODES.get(request.currency, "1"),
            },
        )
        if data.get("StatusCode") == "000":
            return RefundResponse(
                success=True,
                refunded_amount=request.amount,
                provider_refund_id=data.get("PelecardTransactionId"),
                raw_response=data,
            )
        return RefundResponse(
            success=False,
            error_code=data.get("StatusCode") or "UNKNOWN",
            error_message=data.get("ErrorMessage") or "Refund failed",
            raw_response=data,
        )

    async def get_transaction_status(self, request: TransactionStatusRequest) -> ParsedCallback:
        transaction_id = request.provider_transaction_id or request.provider_request_id
        if not transaction_id:
            return ParsedCallback.unavailable("Transaction id is required")

        data = await self._gateway_post("/GetTransaction", {**self._auth(), "TransactionId": transaction_id})
        code = data.get("ResultCode") or data.get("StatusCode")
        if not code:
            return ParsedCallback.unavailable(data.get("ErrorMessage") or "Transaction not found", raw_data=data)

        status = self.map_status(code)
        card_number = data.get("CreditCardNumber") or ""
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=transaction_id,
            provider_request_id=request.provider_request_id or transaction_id,
            amount=from_minor_units(data.get("DebitTotal")),
            currency="ILS",
            order_reference=data.get("UserKey") or data.get("AdditionalDetailsParamX"),
            approval_number=data.get("ApprovalNo") or data.get("VoucherId"),
            card_last_four=card_number[-4:] or None,
            card_brand=self.map_card_brand(data.get("CreditCardBrand")),
            error_code=None if status is TransactionStatus.SUCCESS else str(code),
            error_message=None if status is TransactionStatus.SUCCESS else data.get("ErrorMessage"),
            raw_data=data,
        )

    def validate_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookValidationResult:
        secret = self.credentials.get("webhook_secret")
        if not secret:
            return WebhookValidationResult(is_valid=True, requires_confirmation=True)

        user_agent = get_header(headers, "user-agent") or ""
        if "pelecard" not in user_agent.lower():
            return WebhookValidationResult(is_valid=False, error="Invalid User-Agent header")

        expected = compute_hmac(secret, body)
        if not signatures_match(expected, get_header(headers, "x-pelecard-signature")):
            return WebhookValidationResult(is_valid=False, error="Invalid signature")
        return WebhookValidationResult(is_valid=True)

    def _from_params(self, data: Mapping[str, Any]) -> ParsedCallback:
        status = self.map_status(data.get("PelecardStatusCode"))
        transaction_id = data.get("PelecardTransactionId") or None
        return ParsedCallback(
            success=status is TransactionStatus.SUCCESS,
            status=status,
            provider_transaction_id=transaction_id,
            provider_request_id=transaction_id,
            currency="ILS",
            order_reference=data.get("UserKey") or data.get("ParamX"),
            approval_number=data.get("ApprovalNo"),
            error_code=data.get("ErrorCode"),
            error_message=data.get("ErrorMessage"),
            raw_data=dict(data),
        )

    def parse_callback(self, body: Union[bytes, str, Mapping[str, Any]]) -> ParsedCallback:
        data = decode_payload(body)
        if data is None:
            return ParsedCallback.malformed("Unreadable Pelecard callback body")
        return self._from_params(data)

    def parse_redirect_params(self, params: Mapping[str, str]) -> ParsedCallback:
        return self._from_params(params)

    async def test_connection(self) -> ConnectionTestResult:
        data = await self._gateway_post(
            "/init",
            {
                **self._auth(),
                "GoodURL": "https://example.com/ok",
                "ErrorURL": "https://example.com/error",
                "CancelURL": "https://example.com/cancel",
                "ActionType": "J4",
                "Currency": "1",
                "Total": "100",
                "Language": "HE",
            },
        )
        if data.get("URL"):
            return ConnectionTestResult(success=True, message="Connected to Pelecard")
        error = data.get("Error") if isinstance(data.get("Error"), dict) else {}
        return ConnectionTestResult(
            success=False,
            message=error.get("ErrMsg") or "Pelecard rejected the credentials",
            details=data,
        )
