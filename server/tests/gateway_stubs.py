"""
HTTP stubs for gateway adapters.

Gateways are exercised through ``httpx.MockTransport`` so every adapter runs
its real request building and response parsing.
"""

import base64
import hashlib
import hmac
import json
import zlib
from typing import Callable, List

import httpx

from storefront.services.provider_service import get_configured_provider


PAYPLUS_CREDENTIALS = {"api_key": "pp-api", "secret_key": "pp-secret", "payment_page_uid": "page-uid"}
HOSTED_FIELDS_CREDENTIALS = {"seller_payme_id": "MPL-SELLER", "seller_public_key": "pk-public"}
PAYPAL_CREDENTIALS = {"client_id": "client-1", "client_secret": "secret-1"}


class GatewayStub:
    """Records outbound gateway calls and answers them with ``responder``."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: List[httpx.Request] = []
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def payloads(self, path_suffix: str) -> List[dict]:
        return [json.loads(r.content) for r in self.requests if r.url.path.endswith(path_suffix)]

    def resolver(self):
        async def resolve(session, store, provider_type=None, *, timeout=30.0):
            return await get_configured_provider(
                session, store, provider_type, http_client=self.client, timeout=timeout
            )

        return resolve

    async def aclose(self) -> None:
        await self.client.aclose()


def payplus_responder(ipn_status: str = "000", ipn_amount: str = "110.00") -> Callable[[httpx.Request], httpx.Response]:
    def respond(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if request.url.path.endswith("/PaymentPages/generateLink"):
            reference = payload.get("more_info", "test")
            return httpx.Response(
                200,
                json={
                    "results": {"status": "success", "code": 0, "description": "ok"},
                    "data": {
                        "page_request_uid": f"req-{reference}",
                        "payment_page_link": f"https://payments.test/page/{reference}",
                    },
                },
            )
        if request.url.path.endswith("/PaymentPages/ipn"):
            request_uid = payload.get("payment_request_uid")
            return httpx.Response(
                200,
                json={
                    "results": {"status": "success", "code": 0},
                    "data": {
                        "status_code": ipn_status,
                        "transaction_uid": "txn-confirmed",
                        "page_request_uid": request_uid,
                        "amount": ipn_amount,
                        "currency_code": "ILS",
                        "more_info": request_uid[len("req-"):] if request_uid else None,
                        "approval_num": "0012345",
                    },
                },
            )
        return httpx.Response(404, json={"results": {"status": "error", "description": "unknown endpoint"}})

    return respond


def sign_payplus(body: bytes, secret: str = PAYPLUS_CREDENTIALS["secret_key"]) -> dict:
    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return {"user-agent": "PayPlus", "hash": base64.b64encode(digest).decode()}


def payplus_webhook(provider_request_id: str, reference: str, amount: str = "110.00", status_code: str = "000") -> bytes:
    return json.dumps(
        {
            "transaction": {
                "status_code": status_code,
                "uid": "txn-webhook-1",
                "payment_page_request_uid": provider_request_id,
                "more_info": reference,
                "amount": amount,
                "currency": "ILS",
                "approval_number": "0098765",
            },
            "data": {"card_information": {"four_digits": "4242", "brand_id": 1}},
        }
    ).encode()


def paypal_responder(
    capture_status: str = "COMPLETED", capture_amount: str = "110.00", reference: str = "DEMO-1001"
) -> Callable[[httpx.Request], httpx.Response]:
    def respond(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "paypal-token", "expires_in": 3600})
        if path == "/v2/checkout/orders" and request.method == "POST":
            return httpx.Response(
                201,
                json={
                    "id": "ORDER-1",
                    "status": "PAYER_ACTION_REQUIRED",
                    "links": [
                        {"rel": "self", "href": "https://api-m.sandbox.paypal.com/v2/checkout/orders/ORDER-1"},
                        {"rel": "payer-action", "href": "https://www.sandbox.paypal.com/checkoutnow?token=ORDER-1"},
                    ],
                },
            )
        if path == "/v2/checkout/orders/ORDER-1/capture":
            return httpx.Response(
                201,
                json={
                    "id": "ORDER-1",
                    "status": capture_status,
                    "purchase_units": [
                        {
                            "reference_id": reference,
                            "payments": {
                                "captures": [
                                    {
                                        "id": "CAPTURE-1",
                                        "custom_id": reference,
                                        "amount": {"currency_code": "ILS", "value": capture_amount},
                                    }
                                ]
                            },
                        }
                    ],
                },
            )
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "message": "Not found"})

    return respond


def paypal_event(event_type: str, resource: dict) -> bytes:
    return json.dumps({"id": "WH-1", "event_type": event_type, "resource": resource}).encode()


def sign_paypal(body: bytes, webhook_id: str, secret: str, transmission_time: str = "2024-05-01T10:00:00Z") -> dict:
    message = f"tx-1|{transmission_time}|{webhook_id}|{zlib.crc32(body)}"
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return {
        "PayPal-Transmission-Id": "tx-1",
        "PayPal-Transmission-Time": transmission_time,
        "PayPal-Transmission-Sig": base64.b64encode(digest).decode(),
    }
