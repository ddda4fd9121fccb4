from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.dependencies.database import get_db
from storefront.api.dependencies.maintenance import require_maintenance_token
from storefront.services.callback_service import expire_stale_pending_payments
from storefront.services.outbox_service import dispatch_pending_events


router = APIRouter(
    prefix="/api/payments/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_token)],
)


@router.post("/expire")
async def expire_pending_payments_endpoint(session: AsyncSession = Depends(get_db)) -> dict[str, int]:
    expired = await expire_stale_pending_payments(session)
    return {"expired": expired}


@router.post("/events/dispatch")
async def dispatch_events_endpoint(session: AsyncSession = Depends(get_db)) -> dict[str, int]:
    dispatched = await dispatch_pending_events(session)
    await session.commit()
    return {"dispatched": dispatched}
