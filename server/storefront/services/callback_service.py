"""
Payment callback finalization.

Verifies gateway webhooks and browser returns, reconciles them with the
pending payment created at checkout, and moves the order, pending payment
and transaction to their final state. Post-payment side effects are only
enqueued to the outbox.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Mapping, Optional
from urllib.parse import urlencode

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.config import Settings
from storefront.core.logging import get_logger
from storefront.integrations.payment_gateways.base import (
    CustomerDetails,
    GatewayTransportError,
    ParsedCallback,
    PaymentProviderType,
    TransactionStatus,
)
from storefront.integrations.payment_gateways.hosted_fields_adapter import HostedFieldsAdapter
from storefront.models.audit import AuditCategory, AuditLog
from storefront.models.order import FinancialStatus, Order, OrderStatus
from storefront.models.payment import PaymentTransaction, PendingPayment, TransactionType
from storefront.models.store import Store
from storefront.schemas.payment import FinalizationResult
from storefront.services.checkout_service import ProviderResolver, build_storefront_pages
from storefront.services.outbox_service import ORDER_PAID, ORDER_PAYMENT_FAILED, enqueue_event
from storefront.services.provider_service import ResolvedProvider, get_configured_provider, record_provider_usage
from storefront.services.state_machine import apply_order_outcome, record_transition_audit, transition_payment

logger = get_logger(__name__)

LOCK_PREFIX = "storefront:payment:callback:"
AMOUNT_TOLERANCE = Decimal("0.01")
OPEN_STATUSES = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


class CallbackRejection(Exception):
    def __init__(self, code: str, message: str, status_code: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _order_reference(pending: PendingPayment) -> str | None:
    return (pending.order_data or {}).get("orderReference")


async def find_pending_payment(session: AsyncSession, store_id: str, parsed: ParsedCallback) -> PendingPayment | None:
    """Match by provider request id first, then by the order reference stored at checkout."""
    if parsed.provider_request_id:
        result = await session.execute(
            select(PendingPayment).where(
                PendingPayment.store_id == store_id,
                PendingPayment.provider_request_id == parsed.provider_request_id,
            )
        )
        pending = result.scalars().first()
        if pending is not None:
            return pending

    if parsed.order_reference:
        result = await session.execute(
            select(PendingPayment)
            .where(
                PendingPayment.store_id == store_id,
                PendingPayment.order_data["orderReference"].as_string() == parsed.order_reference,
            )
            .order_by(PendingPayment.created_at.desc())
        )
        return result.scalars().first()
    return None


class CallbackFinalizer:
    """Reconciles gateway outcomes into order and payment state."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        provider_resolver: ProviderResolver = get_configured_provider,
        redis_client: Optional[Redis] = None,
    ) -> None:
        self.session = session
        self.settings = settings
        self.provider_resolver = provider_resolver
        self.redis_client = redis_client

    async def _acquire_lock(self, key: str) -> bool:
        if self.redis_client is None:
            return True
        try:
            created = await self.redis_client.set(key, 1, nx=True, ex=self.settings.callback_lock_ttl_seconds)
        except RedisError as exc:
            logger.warning("payment.callback.lock_unavailable", key=key, error=str(exc))
            return True
        return bool(created)

    async def _release_lock(self, key: str) -> None:
        if self.redis_client is None:
            return
        try:
            await self.redis_client.delete(key)
        except RedisError as exc:
            logger.warning("payment.callback.lock_release_failed", key=key, error=str(exc))

    async def _resolve(self, store_slug: str, provider_type: PaymentProviderType) -> tuple[Store, ResolvedProvider]:
        result = await self.session.execute(select(Store).where(Store.slug == store_slug))
        store = result.scalars().first()
        if store is None:
            raise CallbackRejection("store_not_found", "Store not found", 404)
        resolved = await self.provider_resolver(
            self.session, store, provider_type, timeout=self.settings.gateway_timeout_seconds
        )
        if resolved is None:
            raise CallbackRejection("provider_not_configured", "Payment provider not configured", 404)
        return store, resolved

    async def _confirm(self, resolved: ResolvedProvider, parsed: ParsedCallback) -> ParsedCallback:
        try:
            confirmed = await resolved.gateway.confirm(parsed)
        except GatewayTransportError as exc:
            logger.warning(
                "payment.callback.confirmation_unreachable",
                provider=resolved.provider_type.value,
                error=exc.error_message,
            )
            raise CallbackRejection("confirmation_failed", "Payment could not be confirmed", 502) from exc
        if confirmed.lookup_failed:
            logger.warning(
                "payment.callback.confirmation_failed",
                provider=resolved.provider_type.value,
                provider_request_id=parsed.provider_request_id,
                error=confirmed.error_message,
            )
            raise CallbackRejection("confirmation_failed", "Payment could not be confirmed", 502)
        return confirmed

    async def _run(self, coro) -> FinalizationResult:
        try:
            return await coro
        except CallbackRejection as rejection:
            return FinalizationResult(
                success=False,
                error_code=rejection.code,
                error=rejection.message,
                status_code=rejection.status_code,
            )

    async def handle_webhook(
        self,
        store_slug: str,
        provider_type: PaymentProviderType,
        body: bytes,
        headers: Mapping[str, str],
    ) -> FinalizationResult:
        return await self._run(self._handle_webhook(store_slug, provider_type, body, headers))

    async def _handle_webhook(
        self,
        store_slug: str,
        provider_type: PaymentProviderType,
        body: bytes,
        headers: Mapping[str, str],
    ) -> FinalizationResult:
        store, resolved = await self._resolve(store_slug, provider_type)
        try:
            validation = resolved.gateway.validate_webhook(body, headers)
            if not validation.is_valid:
                logger.warning(
                    "payment.callback.invalid_signature",
                    store_id=store.id,
                    provider=provider_type.value,
                    error=validation.error,
                )
                raise CallbackRejection("invalid_signature", validation.error or "Invalid signature", 401)

            parsed = resolved.gateway.parse_callback(body)
            if parsed.error_code == "malformed_payload":
                raise CallbackRejection("malformed_payload", parsed.error_message or "Malformed payload", 400)
            # an approved but uncaptured payment is completed through the gateway
            confirm = validation.requires_confirmation or parsed.status is TransactionStatus.PROCESSING
            return await self._reconcile(store, resolved, parsed, confirm=confirm, source="webhook")
        finally:
            await resolved.gateway.close()

    async def handle_redirect(
        self,
        store_slug: str,
        provider_type: PaymentProviderType,
        params: Mapping[str, str],
    ) -> FinalizationResult:
        """Finalize a browser return; the result carries the page to send the shopper to."""
        try:
            store, resolved = await self._resolve(store_slug, provider_type)
        except CallbackRejection as rejection:
            return FinalizationResult(
                success=False, error_code=rejection.code, error=rejection.message, status_code=rejection.status_code
            )

        try:
            parsed = resolved.gateway.parse_redirect_params(params)
            result = await self._run(self._reconcile(store, resolved, parsed, confirm=True, source="redirect"))
        finally:
            await resolved.gateway.close()

        reference = result.order_reference or parsed.order_reference
        if reference:
            pages = build_storefront_pages(self.settings, store, reference)
            paid = result.status in (TransactionStatus.SUCCESS, TransactionStatus.PROCESSING)
            result.redirect_url = pages["thank_you_url"] if paid else pages["failure_url"]
        return result

    async def charge_hosted_fields(
        self,
        store_slug: str,
        order_reference: str,
        buyer_key: str,
        installments: int = 1,
    ) -> FinalizationResult:
        return await self._run(self._charge_hosted_fields(store_slug, order_reference, buyer_key, installments))

    async def _charge_hosted_fields(
        self,
        store_slug: str,
        order_reference: str,
        buyer_key: str,
        installments: int,
    ) -> FinalizationResult:
        store, resolved = await self._resolve(store_slug, PaymentProviderType.HOSTED_FIELDS)
        gateway = resolved.gateway
        if not isinstance(gateway, HostedFieldsAdapter):
            raise CallbackRejection("provider_not_configured", "Hosted fields are not configured", 404)

        try:
            lookup = ParsedCallback(
                success=False,
                status=TransactionStatus.PENDING,
                provider_request_id=gateway.request_id_for(order_reference),
                order_reference=order_reference,
            )
            pending = await find_pending_payment(self.session, store.id, lookup)
            if pending is None:
                raise CallbackRejection("pending_payment_not_found", "Payment not found", 404)
            if pending.status.is_terminal:
                return self._duplicate(pending)
            if _as_utc(pending.expires_at) < datetime.now(timezone.utc):
                raise CallbackRejection("payment_expired", "Payment session expired", 410)

            query = urlencode({"provider": PaymentProviderType.HOSTED_FIELDS.value, "store": store.slug})
            order_number = (pending.order_data or {}).get("orderNumber")
            sale = await gateway.generate_sale(
                buyer_key=buyer_key,
                amount=pending.amount,
                currency=pending.currency,
                order_reference=order_reference,
                product_name=f"{store.name} #{order_number}" if order_number else store.name,
                customer=CustomerDetails(email=pending.customer_email),
                callback_url=f"{self.settings.app_url}/api/payments/callback?{query}",
                return_url=f"{self.settings.app_url}/api/payments/return?{query}&transaction_id={order_reference}",
                installments=installments,
            )
        except GatewayTransportError as exc:
            logger.warning("payment.hosted_fields.unreachable", store_id=store.id, error=exc.error_message)
            raise CallbackRejection("gateway_unavailable", "Payment provider unavailable", 502) from exc
        finally:
            await gateway.close()

        if sale.requires_3ds:
            logger.info("payment.hosted_fields.requires_action", store_id=store.id, order_reference=order_reference)
            return FinalizationResult(
                success=True,
                status=TransactionStatus.PENDING,
                requires_action=True,
                redirect_url=sale.redirect_url,
                order_id=pending.order_id,
                order_reference=order_reference,
            )
        return await self._finalize(store, resolved, pending, sale.outcome, source="hosted_fields")

    def _duplicate(self, pending: PendingPayment) -> FinalizationResult:
        logger.info(
            "payment.callback.duplicate",
            pending_payment_id=pending.id,
            status=pending.status.value,
        )
        return FinalizationResult(
            success=True,
            status=pending.status,
            duplicate=True,
            order_id=pending.order_id,
            order_reference=_order_reference(pending),
        )

    async def _reconcile(
        self,
        store: Store,
        resolved: ResolvedProvider,
        parsed: ParsedCallback,
        *,
        confirm: bool,
        source: str,
    ) -> FinalizationResult:
        pending = await find_pending_payment(self.session, store.id, parsed)
        if pending is not None and pending.status.is_terminal:
            return self._duplicate(pending)

        if confirm:
            parsed = await self._confirm(resolved, parsed)
            if pending is None:
                pending = await find_pending_payment(self.session, store.id, parsed)

        if pending is None:
            logger.warning(
                "payment.callback.pending_not_found",
                store_id=store.id,
                provider_request_id=parsed.provider_request_id,
                order_reference=parsed.order_reference,
            )
            raise CallbackRejection("pending_payment_not_found", "Payment not found", 404)
        return await self._finalize(store, resolved, pending, parsed, source=source)

    async def _finalize(
        self,
        store: Store,
        resolved: ResolvedProvider,
        pending: PendingPayment,
        parsed: ParsedCallback,
        *,
        source: str,
    ) -> FinalizationResult:
        event_id = parsed.provider_transaction_id or parsed.provider_request_id or pending.provider_request_id
        lock_key = f"{LOCK_PREFIX}{resolved.provider_type.value}:{event_id}:{parsed.status.value}"
        if not await self._acquire_lock(lock_key):
            return self._duplicate(pending)

        try:
            return await self._apply(store, resolved, pending, parsed, source=source)
        except Exception:
            await self._release_lock(lock_key)
            raise

    async def _apply(
        self,
        store: Store,
        resolved: ResolvedProvider,
        pending: PendingPayment,
        parsed: ParsedCallback,
        *,
        source: str,
    ) -> FinalizationResult:
        now = datetime.now(timezone.utc)
        order_id = pending.order_id
        order_reference = _order_reference(pending)
        log = logger.bind(
            store_id=store.id,
            order_id=order_id,
            order_reference=order_reference,
            provider=resolved.provider_type.value,
            source=source,
        )

        target = parsed.status
        error_code, error_message = parsed.error_code, parsed.error_message
        amount_mismatch = (
            target is TransactionStatus.SUCCESS
            and parsed.amount is not None
            and abs(parsed.amount - pending.amount) > AMOUNT_TOLERANCE
        )
        if amount_mismatch:
            target = TransactionStatus.FAILED
            error_code = "amount_mismatch"
            error_message = f"Gateway amount {parsed.amount} does not match expected {pending.amount}"
            log.error("payment.callback.amount_mismatch", expected=str(pending.amount), received=str(parsed.amount))

        previous = pending.status
        transition = transition_payment(previous, target)
        if not transition.succeeded:
            log.info("payment.callback.transition_ignored", current=previous.value, target=target.value)
            return FinalizationResult(
                success=True,
                status=previous,
                duplicate=True,
                order_id=order_id,
                order_reference=order_reference,
            )
        if not transition.changed:
            return FinalizationResult(
                success=True, status=previous, order_id=order_id, order_reference=order_reference
            )

        claimed = await self.session.execute(
            update(PendingPayment)
            .where(PendingPayment.id == pending.id, PendingPayment.status == previous)
            .values(status=target, completed_at=now if target.is_terminal else None)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.session.rollback()
            log.info("payment.callback.duplicate", reason="concurrent_update")
            return FinalizationResult(
                success=True, duplicate=True, order_id=order_id, order_reference=order_reference
            )
        pending.status = target
        if target.is_terminal:
            pending.completed_at = now

        transaction = await self._charge_transaction(pending, resolved)
        transaction.status = target
        transaction.provider_transaction_id = parsed.provider_transaction_id or transaction.provider_transaction_id
        transaction.provider_approval_num = parsed.approval_number or transaction.provider_approval_num
        transaction.provider_response = parsed.raw_data
        transaction.error_code = error_code if target is not TransactionStatus.SUCCESS else None
        transaction.error_message = error_message if target is not TransactionStatus.SUCCESS else None
        if parsed.card_last_four or parsed.card_brand:
            transaction.metadata_json = {
                **(transaction.metadata_json or {}),
                "cardLastFour": parsed.card_last_four,
                "cardBrand": parsed.card_brand,
            }
        if target.is_terminal:
            transaction.processed_at = now

        order = await self.session.get(Order, order_id)
        if order is not None and target.is_terminal:
            apply_order_outcome(order, target, now=now)

        record_transition_audit(
            self.session,
            store_id=store.id,
            order_id=order_id,
            actor=f"gateway:{resolved.provider_type.value}",
            previous=previous,
            target=target,
            details={"source": source},
        )

        event_payload = {
            "order_id": order_id,
            "order_number": (pending.order_data or {}).get("orderNumber"),
            "order_reference": order_reference,
            "amount": str(pending.amount),
            "currency": pending.currency,
            "customer_email": pending.customer_email,
            "customer_id": pending.customer_id,
            "provider": resolved.provider_type.value,
            "provider_transaction_id": transaction.provider_transaction_id,
        }
        if target is TransactionStatus.SUCCESS:
            await record_provider_usage(self.session, resolved.config.id, pending.amount)
            await enqueue_event(
                self.session,
                store_id=store.id,
                order_id=order_id,
                event_type=ORDER_PAID,
                payload={
                    **event_payload,
                    "cart_items": pending.cart_items,
                    "discount_code": pending.discount_code,
                    "discount_amount": str(pending.discount_amount),
                    "influencer_id": pending.influencer_id,
                    "credit_used": str(order.credit_used) if order is not None else "0",
                },
            )
            self._audit(store.id, order_id, "payment.succeeded", {"amount": str(pending.amount)}, resolved)
        elif target.is_terminal:
            await enqueue_event(
                self.session,
                store_id=store.id,
                order_id=order_id,
                event_type=ORDER_PAYMENT_FAILED,
                payload={**event_payload, "status": target.value, "error_code": error_code},
            )
            self._audit(
                store.id,
                order_id,
                "payment.amount_mismatch" if amount_mismatch else f"payment.{target.value}",
                {
                    "error_code": error_code,
                    "error_message": error_message,
                    "expected": str(pending.amount),
                    "received": str(parsed.amount) if parsed.amount is not None else None,
                },
                resolved,
                critical=amount_mismatch,
            )

        await self.session.commit()
        log.info("payment.callback.finalized", previous=previous.value, status=target.value)
        return FinalizationResult(
            success=True,
            status=target,
            order_id=order_id,
            order_reference=order_reference,
            error_code=error_code if target is not TransactionStatus.SUCCESS else None,
        )

    async def _charge_transaction(self, pending: PendingPayment, resolved: ResolvedProvider) -> PaymentTransaction:
        if pending.transaction_id:
            transaction = await self.session.get(PaymentTransaction, pending.transaction_id)
            if transaction is not None:
                return transaction

        result = await self.session.execute(
            select(PaymentTransaction)
            .where(
                PaymentTransaction.order_id == pending.order_id,
                PaymentTransaction.type == TransactionType.CHARGE,
                PaymentTransaction.provider_request_id == pending.provider_request_id,
            )
            .order_by(PaymentTransaction.created_at.desc())
        )
        transaction = result.scalars().first()
        if transaction is not None:
            return transaction

        # the checkout crashed before writing its ledger row
        transaction = PaymentTransaction(
            store_id=pending.store_id,
            order_id=pending.order_id,
            customer_id=pending.customer_id,
            provider_config_id=resolved.config.id,
            provider=resolved.provider_type,
            type=TransactionType.CHARGE,
            status=pending.status,
            amount=pending.amount,
            currency=pending.currency,
            provider_request_id=pending.provider_request_id,
            metadata_json={"orderReference": _order_reference(pending), "customerEmail": pending.customer_email},
        )
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    def _audit(
        self,
        store_id: str,
        order_id: str,
        action: str,
        details: dict,
        resolved: ResolvedProvider,
        *,
        critical: bool = False,
    ) -> None:
        self.session.add(
            AuditLog(
                store_id=store_id,
                order_id=order_id,
                actor=f"gateway:{resolved.provider_type.value}",
                action=action,
                category=AuditCategory.PAYMENT,
                details=details,
                critical=critical,
            )
        )


async def expire_stale_pending_payments(session: AsyncSession, now: datetime | None = None) -> int:
    """
    Cancel pending payments whose checkout was abandoned.

    Returns:
        Number of pending payments cancelled
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(PendingPayment).where(PendingPayment.status.in_(OPEN_STATUSES), PendingPayment.expires_at < now)
    )
    expired = 0
    for pending in result.scalars().all():
        claimed = await session.execute(
            update(PendingPayment)
            .where(PendingPayment.id == pending.id, PendingPayment.status == pending.status)
            .values(status=TransactionStatus.CANCELLED, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            continue

        await session.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.order_id == pending.order_id,
                PaymentTransaction.type == TransactionType.CHARGE,
                PaymentTransaction.status.in_(OPEN_STATUSES),
            )
            .values(status=TransactionStatus.CANCELLED, error_code="expired", processed_at=now)
            .execution_options(synchronize_session=False)
        )
        order = await session.get(Order, pending.order_id)
        if order is not None and order.financial_status is FinancialStatus.PENDING:
            apply_order_outcome(order, TransactionStatus.CANCELLED, now=now)
            order.status = OrderStatus.CANCELLED
        record_transition_audit(
            session,
            store_id=pending.store_id,
            order_id=pending.order_id,
            actor="system",
            previous=pending.status,
            target=TransactionStatus.CANCELLED,
            details={"reason": "expired"},
        )
        expired += 1

    await session.commit()
    if expired:
        logger.info("payment.pending.expired", count=expired)
    return expired
