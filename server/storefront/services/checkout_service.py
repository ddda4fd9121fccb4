"""
Checkout orchestration.

Turns a client-submitted cart into a durable order and hands it to the
store's payment gateway. Every amount sent to the gateway is re-derived on
the server; client-declared totals are only compared and logged.
"""

from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Awaitable, Callable
from urllib.parse import urlencode

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings
from storefront.core.logging import get_logger
from storefront.core.messages import get_message
from storefront.integrations.payment_gateways.base import (
    CustomerDetails,
    GatewayTransportError,
    InitiatePaymentRequest,
    LineItem,
    LineItemKind,
    PaymentProviderType,
    TransactionStatus,
)
from storefront.models.audit import AuditCategory, AuditLog
from storefront.models.customer import Customer
from storefront.models.order import Order, OrderItem
from storefront.models.payment import PaymentTransaction, PendingPayment, TransactionType
from storefront.models.store import Store
from storefront.schemas.checkout import CartItem, CheckoutRequest, CheckoutResult, RequestContext
from storefront.services.customer_service import resolve_customer
from storefront.services.discount_service import AppliedDiscount, DiscountRejected, increment_usage, validate_discount
from storefront.services.error_sanitizer import classify_storage_error
from storefront.services.inventory_service import InventoryReport, validate_inventory
from storefront.services.provider_service import ResolvedProvider, get_configured_provider

logger = get_logger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0")
REFERENCE_ALPHABET = string.ascii_uppercase + string.digits
REFERENCE_LENGTH = 10
SHIPPING_LINE_PREFIX = "משלוח"
DISCOUNT_LINE_NAME = "הנחה"
CREDIT_LINE_NAME = "קרדיט"

TABLET_PATTERN = re.compile(r"ipad|tablet|kindle|silk|playbook|android(?!.*mobile)", re.IGNORECASE)
MOBILE_PATTERN = re.compile(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile", re.IGNORECASE)

ERROR_STATUS_CODES = {"duplicate_order": 409, "timeout": 504, "gateway_unavailable": 502}

ProviderResolver = Callable[..., Awaitable[ResolvedProvider | None]]


class CheckoutRejection(Exception):
    """A checkout that must stop with a customer-facing error."""

    def __init__(self, code: str, message: str, status_code: int = 400, details: dict | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def generate_order_reference(prefix: str = "QS") -> str:
    suffix = "".join(secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_LENGTH))
    return f"{prefix}-{suffix}"


def detect_device_type(user_agent: str | None) -> str:
    if not user_agent:
        return "desktop"
    if TABLET_PATTERN.search(user_agent):
        return "tablet"
    if MOBILE_PATTERN.search(user_agent):
        return "mobile"
    return "desktop"


def build_storefront_pages(settings: Settings, store: Store, order_reference: str) -> dict:
    """Shopper-facing pages the return endpoint redirects to once a payment is finalized."""
    if store.custom_domain:
        checkout_base = f"https://{store.custom_domain}/checkout"
    else:
        checkout_base = f"{settings.app_url}/shops/{store.slug}/checkout"
    return {
        "thank_you_url": f"{checkout_base}/thank-you?ref={order_reference}",
        "failure_url": f"{checkout_base}?error=payment_failed",
        "checkout_url": checkout_base,
    }


def build_checkout_urls(settings: Settings, store: Store, provider: PaymentProviderType, order_reference: str) -> dict:
    """
    URLs handed to the gateway.

    Success and failure returns both land on the return endpoint, which
    finalizes the payment and then redirects to the storefront page.
    """
    pages = build_storefront_pages(settings, store, order_reference)
    callback_query = urlencode({"provider": provider.value, "store": store.slug})
    return_query = urlencode({"provider": provider.value, "store": store.slug, "ref": order_reference})
    return_url = f"{settings.app_url}/api/payments/return?{return_query}"
    return {
        "success_url": return_url,
        "failure_url": return_url,
        "cancel_url": pages["checkout_url"],
        "callback_url": f"{settings.app_url}/api/payments/callback?{callback_query}",
    }


def build_product_lines(items: list[CartItem], inventory: InventoryReport) -> list[LineItem]:
    lines = []
    for item in items:
        product = inventory.products.get(item.product_id) if item.product_id else None
        lines.append(
            LineItem(
                name=item.name or (product.name if product else "Item"),
                quantity=item.quantity,
                unit_price=quantize(item.unit_price),
                kind=LineItemKind.PRODUCT,
                sku=item.sku,
                product_id=item.product_id,
            )
        )
    return lines


def build_line_items(
    product_lines: list[LineItem],
    *,
    shipping_method: str | None,
    shipping_amount: Decimal,
    discount_amount: Decimal,
    discount_code: str | None,
    credit_used: Decimal,
) -> list[LineItem]:
    """
    Gateway lines: cart items, then shipping, then negative discount and credit lines.

    The sum of price times quantity over the result is the amount charged.
    """
    lines = list(product_lines)
    if shipping_amount > 0:
        name = f"{SHIPPING_LINE_PREFIX} - {shipping_method}" if shipping_method else SHIPPING_LINE_PREFIX
        lines.append(LineItem(name=name, quantity=1, unit_price=shipping_amount, kind=LineItemKind.SHIPPING))
    if discount_amount > 0:
        name = f"{DISCOUNT_LINE_NAME} ({discount_code})" if discount_code else DISCOUNT_LINE_NAME
        lines.append(LineItem(name=name, quantity=1, unit_price=-discount_amount, kind=LineItemKind.DISCOUNT))
    if credit_used > 0:
        lines.append(LineItem(name=CREDIT_LINE_NAME, quantity=1, unit_price=-credit_used, kind=LineItemKind.DISCOUNT))
    return lines


class CheckoutOrchestrator:
    """Runs one checkout attempt from cart to gateway hand-off."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        provider_resolver: ProviderResolver = get_configured_provider,
    ) -> None:
        self.session = session
        self.settings = settings
        self.provider_resolver = provider_resolver

    async def initiate(self, request: CheckoutRequest, context: RequestContext | None = None) -> CheckoutResult:
        context = context or RequestContext()
        locale = request.locale or self.settings.default_locale
        try:
            return await self._initiate(request, context, locale)
        except CheckoutRejection as rejection:
            logger.info("checkout.rejected", code=rejection.code, store=request.store_slug, **rejection.details)
            await self.session.rollback()
            return CheckoutResult(
                success=False,
                error_code=rejection.code,
                error=rejection.message,
                status_code=rejection.status_code,
                details=rejection.details,
            )
        except Exception as exc:
            logger.exception("checkout.failed", store=request.store_slug, error=str(exc))
            await self.session.rollback()
            code = classify_storage_error(exc)
            return CheckoutResult(
                success=False,
                error_code=code,
                error=get_message(code, locale),
                status_code=ERROR_STATUS_CODES.get(code, 500),
            )

    def _reject(self, code: str, locale: str, status_code: int = 400, **details) -> CheckoutRejection:
        return CheckoutRejection(code, get_message(code, locale), status_code, details)

    def _validate(self, request: CheckoutRequest, locale: str) -> None:
        missing = []
        if not request.store_slug.strip():
            missing.append("store_slug")
        if not request.customer.full_name:
            missing.append("customer.name")
        if not request.customer.email:
            missing.append("customer.email")
        if not request.items:
            missing.append("items")
        if missing:
            raise self._reject("validation_error", locale, missing=missing)
        if request.amount <= 0:
            raise self._reject("invalid_amount", locale)

    async def _resolve_store(self, identifier: str) -> Store | None:
        identifier = identifier.strip().lower()
        result = await self.session.execute(
            select(Store).where(
                Store.is_active.is_(True),
                or_(Store.slug == identifier, Store.custom_domain == identifier),
            )
        )
        return result.scalars().first()

    async def _reserve_order_number(self, store: Store) -> int:
        result = await self.session.execute(
            update(Store)
            .where(Store.id == store.id)
            .values(order_counter=Store.order_counter + 1)
            .returning(Store.order_counter)
            .execution_options(synchronize_session=False)
        )
        order_number = result.scalar_one()
        # committed on its own so a failed checkout never hands the number out again
        await self.session.commit()
        return order_number

    async def _apply_discount(self, request: CheckoutRequest, store: Store, subtotal: Decimal, locale: str) -> AppliedDiscount | None:
        if not request.discount_code or not request.discount_code.strip():
            return None
        try:
            applied = await validate_discount(self.session, store.id, request.discount_code, subtotal)
        except DiscountRejected as exc:
            raise CheckoutRejection(
                "coupon_invalid",
                get_message(exc.code, locale),
                400,
                {"discount_code": request.discount_code, "reason": exc.reason},
            ) from exc

        if request.discount_amount is not None and quantize(request.discount_amount) != applied.amount:
            logger.warning(
                "checkout.coupon.amount_mismatch",
                store_id=store.id,
                discount_code=applied.discount.code,
                client_amount=str(request.discount_amount),
                server_amount=str(applied.amount),
            )
        return applied

    def _credit_to_use(self, request: CheckoutRequest, customer: Customer, remaining: Decimal) -> Decimal:
        if request.credit_used <= 0:
            return ZERO
        return quantize(max(min(request.credit_used, customer.credit_balance or ZERO, remaining), ZERO))

    async def _initiate(self, request: CheckoutRequest, context: RequestContext, locale: str) -> CheckoutResult:
        self._validate(request, locale)

        store = await self._resolve_store(request.store_slug)
        if store is None:
            raise self._reject("store_not_found", locale, 404, store=request.store_slug)
        locale = request.locale or store.locale or locale

        resolved = await self.provider_resolver(
            self.session, store, request.provider, timeout=self.settings.gateway_timeout_seconds
        )
        if resolved is None:
            raise self._reject("provider_not_configured", locale, 400)

        try:
            return await self._place_order(request, context, locale, store, resolved)
        finally:
            await resolved.gateway.close()

    async def _place_order(
        self,
        request: CheckoutRequest,
        context: RequestContext,
        locale: str,
        store: Store,
        resolved: ResolvedProvider,
    ) -> CheckoutResult:
        provider = resolved.provider_type
        provider_config_id = resolved.config.id
        currency = request.currency or store.currency or self.settings.default_currency

        inventory = await validate_inventory(self.session, store.id, request.items)
        if not inventory.ok:
            raise self._reject("insufficient_inventory", locale, 409, **inventory.as_details())

        store_id = store.id
        order_number = await self._reserve_order_number(store)
        order_reference = generate_order_reference(self.settings.order_reference_prefix)
        urls = build_checkout_urls(self.settings, store, provider, order_reference)
        log = logger.bind(store_id=store_id, order_reference=order_reference, order_number=order_number)

        customer = await resolve_customer(self.session, store_id, request.customer)
        customer_id, customer_email = customer.id, customer.email

        product_lines = build_product_lines(request.items, inventory)
        subtotal = sum((line.total for line in product_lines), ZERO)
        shipping_amount = quantize(request.shipping.cost) if request.shipping else ZERO
        applied = await self._apply_discount(request, store, subtotal, locale)
        discount_amount = applied.amount if applied else ZERO
        discount_id = applied.discount.id if applied else None
        discount_code = applied.discount.code if applied else None
        credit_used = self._credit_to_use(request, customer, subtotal + shipping_amount - discount_amount)
        total = quantize(max(subtotal + shipping_amount - discount_amount - credit_used, ZERO))
        if total <= 0:
            raise self._reject("invalid_amount", locale)
        if quantize(request.amount) != total:
            log.warning("checkout.amount.mismatch", client_amount=str(request.amount), server_amount=str(total))

        lines = build_line_items(
            product_lines,
            shipping_method=request.shipping.method if request.shipping else None,
            shipping_amount=shipping_amount,
            discount_amount=discount_amount,
            discount_code=discount_code,
            credit_used=credit_used,
        )

        utm = request.utm
        order = Order(
            store_id=store_id,
            order_number=order_number,
            subtotal=subtotal,
            discount_amount=discount_amount,
            credit_used=credit_used,
            shipping_amount=shipping_amount,
            total=total,
            currency=currency,
            customer_id=customer_id,
            customer_email=customer_email,
            customer_name=request.customer.full_name,
            customer_phone=request.customer.phone,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address or request.shipping_address,
            shipping_method=request.shipping.method if request.shipping else None,
            discount_code=discount_code,
            note=request.note,
            influencer_id=request.influencer_id,
            utm_source=utm.source if utm else None,
            utm_medium=utm.medium if utm else None,
            utm_campaign=utm.campaign if utm else None,
            device_type=detect_device_type(context.user_agent),
        )
        self.session.add(order)
        await self.session.commit()
        order_id = order.id
        log = log.bind(order_id=order_id)
        log.info("checkout.order.created", total=str(total), provider=provider.value)

        ledger = {
            "store_id": store_id,
            "order_id": order_id,
            "customer_id": customer_id,
            "provider_config_id": provider_config_id,
            "provider": provider,
            "type": TransactionType.CHARGE,
            "amount": total,
            "currency": currency,
            "metadata_json": {"orderReference": order_reference, "customerEmail": customer_email},
            "ip_address": context.ip_address,
            "user_agent": context.user_agent,
        }

        # best effort from here until the gateway call; failures are logged only
        if discount_id is not None:
            try:
                if not await increment_usage(self.session, discount_id):
                    log.warning("checkout.coupon.limit_reached", discount_id=discount_id)
                await self.session.commit()
            except Exception as exc:
                await self.session.rollback()
                log.warning("checkout.coupon.increment_failed", error=str(exc))

        await self._persist_items(order_id, request.items, inventory, log)

        payment_request = InitiatePaymentRequest(
            amount=sum((line.total for line in lines), ZERO),
            currency=currency,
            order_reference=order_reference,
            customer=CustomerDetails(
                email=customer_email,
                name=request.customer.full_name,
                phone=request.customer.phone,
                address=request.customer.address,
                city=request.customer.city,
                postal_code=request.customer.postal_code,
            ),
            items=lines,
            language=locale,
            metadata={"discount_code": discount_code, "order_number": order_number},
            **urls,
        )
        try:
            response = await resolved.gateway.initiate_payment(payment_request)
        except GatewayTransportError as exc:
            await self._record_failed_initiation(ledger, exc.error_code or "unreachable", exc.error_message, None)
            raise

        if not response.success:
            await self._record_failed_initiation(
                ledger, response.error_code, response.error_message, response.raw_response
            )
            log.warning("checkout.gateway.rejected", error_code=response.error_code)
            raise CheckoutRejection(
                "payment_initiation_failed",
                get_message("payment_initiation_failed", locale),
                400,
                {"order_reference": order_reference, "gateway_error_code": response.error_code},
            )

        pending = PendingPayment(
            store_id=store_id,
            provider=provider,
            provider_request_id=response.provider_request_id,
            order_id=order_id,
            order_data={**request.order_data, "orderReference": order_reference, "orderNumber": order_number},
            cart_items=[item.model_dump(mode="json") for item in request.items],
            customer_email=customer_email,
            customer_id=customer_id,
            amount=total,
            currency=currency,
            status=TransactionStatus.PENDING,
            discount_code=discount_code,
            discount_amount=discount_amount,
            influencer_id=request.influencer_id,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=self.settings.pending_payment_ttl_minutes),
        )
        self.session.add(pending)
        await self.session.commit()

        transaction = PaymentTransaction(
            status=TransactionStatus.PENDING,
            provider_request_id=response.provider_request_id,
            **ledger,
        )
        self.session.add(transaction)
        await self.session.flush()
        pending.transaction_id = transaction.id
        self.session.add(
            AuditLog(
                store_id=store_id,
                order_id=order_id,
                actor=customer_email,
                action="checkout.payment.initiated",
                category=AuditCategory.CHECKOUT,
                details={"order_reference": order_reference, "provider": provider.value, "amount": str(total)},
            )
        )
        await self.session.commit()
        log.info("checkout.payment.initiated", provider_request_id=response.provider_request_id)

        return CheckoutResult(
            success=True,
            payment_url=response.payment_url,
            client_token=response.client_token,
            order_reference=order_reference,
            provider_request_id=response.provider_request_id,
            order_id=order_id,
            order_number=order_number,
        )

    async def _persist_items(self, order_id: str, items: list[CartItem], inventory: InventoryReport, log) -> None:
        try:
            for item in items:
                product = inventory.products.get(item.product_id) if item.product_id else None
                unit_price = quantize(item.unit_price)
                properties: dict = {}
                if item.addons:
                    properties["addons"] = [addon.model_dump(mode="json") for addon in item.addons]
                if item.bundle:
                    properties["bundle"] = item.bundle
                self.session.add(
                    OrderItem(
                        order_id=order_id,
                        product_id=product.id if product else None,
                        variant_id=item.variant_id if product else None,
                        name=item.name or (product.name if product else "Item"),
                        variant_title=item.variant_title,
                        sku=item.sku or (product.sku if product else None),
                        quantity=item.quantity,
                        price=unit_price,
                        total=quantize(unit_price * item.quantity),
                        image_url=item.image_url or (product.image_url if product else None),
                        properties=properties,
                    )
                )
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            log.error("checkout.order_items.failed", error=str(exc))

    async def _record_failed_initiation(
        self,
        ledger: dict,
        error_code: str | None,
        error_message: str | None,
        raw_response: dict | None,
    ) -> None:
        self.session.add(
            PaymentTransaction(
                status=TransactionStatus.FAILED,
                provider_response=raw_response,
                error_code=error_code,
                error_message=error_message,
                processed_at=datetime.now(timezone.utc),
                **ledger,
            )
        )
        await self.session.commit()
