from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.dependencies.database import get_db
from storefront.api.dependencies.redis import get_redis_client
from storefront.core.config import Settings, get_settings
from storefront.integrations.payment_gateways.base import PaymentProviderType
from storefront.schemas.checkout import CheckoutRequest, CheckoutResult, RequestContext
from storefront.schemas.payment import FinalizationResult, HostedFieldsChargeRequest
from storefront.services.callback_service import CallbackFinalizer
from storefront.services.checkout_service import CheckoutOrchestrator


router = APIRouter(prefix="/api/payments", tags=["payments"])


def request_context(request: Request) -> RequestContext:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        ip_address = forwarded.split(",")[0].strip()
    else:
        ip_address = request.headers.get("x-real-ip") or (request.client.host if request.client else None)
    return RequestContext(ip_address=ip_address, user_agent=request.headers.get("user-agent"))


def _json(result: CheckoutResult | FinalizationResult, **extra) -> JSONResponse:
    content = result.model_dump(mode="json", exclude={"status_code"}, exclude_none=True)
    return JSONResponse(status_code=result.status_code, content={**content, **extra})


@router.post("/initiate", response_model=CheckoutResult)
async def initiate_payment_endpoint(
    payload: CheckoutRequest,
    request: Request,
    session: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    orchestrator = CheckoutOrchestrator(session, settings)
    result = await orchestrator.initiate(payload, request_context(request))
    return _json(result)


@router.post("/callback")
async def payment_callback_endpoint(
    request: Request,
    provider: PaymentProviderType = Query(...),
    store: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_db),
    redis_client: Redis | None = Depends(get_redis_client),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    body = await request.body()
    finalizer = CallbackFinalizer(session, settings, redis_client=redis_client)
    result = await finalizer.handle_webhook(store, provider, body, dict(request.headers))
    return _json(result, received=result.success)


@router.get("/return")
async def payment_return_endpoint(
    request: Request,
    provider: PaymentProviderType = Query(...),
    store: str = Query(..., min_length=1),
    session: AsyncSession = Depends(get_db),
    redis_client: Redis | None = Depends(get_redis_client),
    settings: Settings = Depends(get_settings),
):
    params = {key: value for key, value in request.query_params.items() if key not in ("provider", "store")}
    finalizer = CallbackFinalizer(session, settings, redis_client=redis_client)
    result = await finalizer.handle_redirect(store, provider, params)
    if result.redirect_url:
        return RedirectResponse(result.redirect_url, status_code=status.HTTP_303_SEE_OTHER)
    return _json(result)


@router.post("/hosted-fields/charge", response_model=FinalizationResult)
async def hosted_fields_charge_endpoint(
    payload: HostedFieldsChargeRequest,
    session: AsyncSession = Depends(get_db),
    redis_client: Redis | None = Depends(get_redis_client),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    finalizer = CallbackFinalizer(session, settings, redis_client=redis_client)
    result = await finalizer.charge_hosted_fields(
        payload.store_slug, payload.order_reference, payload.buyer_key, installments=payload.installments
    )
    return _json(result)
