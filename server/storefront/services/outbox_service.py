from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.logging import get_logger
from storefront.models.event import EventOutbox, EventStatus

logger = get_logger(__name__)

ORDER_PAID = "order.paid"
ORDER_PAYMENT_FAILED = "order.payment_failed"
MAX_ATTEMPTS = 5


async def enqueue_event(
    session: AsyncSession,
    *,
    store_id: str | None,
    order_id: str | None,
    event_type: str,
    payload: dict,
    channel: str = "post_payment",
    schedule_in_seconds: int = 0,
) -> EventOutbox:
    event = EventOutbox(
        store_id=store_id,
        order_id=order_id,
        event_type=event_type,
        payload=payload,
        channel=channel,
        next_run_at=datetime.now(timezone.utc) + timedelta(seconds=schedule_in_seconds),
    )
    session.add(event)
    await session.flush()
    logger.info("event.outbox.enqueued", event_type=event_type, channel=channel, order_id=order_id)
    return event


async def dispatch_pending_events(
    session: AsyncSession,
    handler: Callable[[EventOutbox], Awaitable[None]] | None = None,
    *,
    now: datetime | None = None,
) -> int:
    """
    Hand due events to ``handler``; failed events are retried with a linear backoff.

    Returns:
        Number of events dispatched
    """
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(EventOutbox)
        .where(
            EventOutbox.status.in_((EventStatus.PENDING, EventStatus.FAILED)),
            EventOutbox.attempts < MAX_ATTEMPTS,
            EventOutbox.next_run_at <= now,
        )
        .order_by(EventOutbox.next_run_at.asc())
    )
    events = result.scalars().all()
    dispatched = 0
    for event in events:
        try:
            if handler is not None:
                await handler(event)
        except Exception as exc:  # handler failures are recorded on the event for retry
            event.status = EventStatus.FAILED
            event.attempts += 1
            event.last_error = str(exc)
            event.next_run_at = now + timedelta(seconds=30 * event.attempts)
            logger.warning("event.outbox.failed", event_id=event.id, error=str(exc))
            continue

        event.status = EventStatus.DISPATCHED
        event.attempts += 1
        event.last_error = None
        dispatched += 1
        logger.info("event.outbox.dispatched", event_type=event.event_type, channel=event.channel)
    return dispatched
