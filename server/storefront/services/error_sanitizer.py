"""Map internal failures to customer-safe message codes."""

from __future__ import annotations

import asyncio

from sqlalchemy.exc import DBAPIError

from storefront.integrations.payment_gateways.base import GatewayTransportError

DUPLICATE_MARKERS = ("duplicate key", "unique constraint", "uniqueviolation")
FOREIGN_KEY_MARKERS = ("foreign key", "foreignkeyviolation")
TIMEOUT_MARKERS = ("timeout", "timed out", "canceling statement", "database is locked")


def _text(exc: BaseException) -> str:
    parts = [str(exc)]
    if isinstance(exc, DBAPIError) and exc.orig is not None:
        parts.append(type(exc.orig).__name__)
        parts.append(str(exc.orig))
    return " ".join(parts).lower()


def classify_storage_error(exc: BaseException) -> str:
    """
    Classify an exception into a message code from ``core.messages``.

    Returns:
        One of ``duplicate_order``, ``invalid_reference``, ``timeout``,
        ``gateway_unavailable`` or ``checkout_failed``
    """
    if isinstance(exc, GatewayTransportError):
        return "timeout" if exc.error_code == "timeout" else "gateway_unavailable"
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return "timeout"

    if not isinstance(exc, DBAPIError):
        return "checkout_failed"

    text = _text(exc)
    if any(marker in text for marker in DUPLICATE_MARKERS):
        return "duplicate_order"
    if any(marker in text for marker in FOREIGN_KEY_MARKERS):
        return "invalid_reference"
    if any(marker in text for marker in TIMEOUT_MARKERS):
        return "timeout"
    return "checkout_failed"
