from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storefront.api.routes import health, maintenance, payments, providers
from storefront.core.config import get_settings
from storefront.core.logging import configure_logging, get_logger
from storefront.db.session import lifespan


configure_logging(get_settings().log_level)
logger = get_logger(__name__)


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(payments.router)
    application.include_router(providers.router)
    application.include_router(maintenance.router)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin).rstrip("/") for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    logger.info("application.created", environment=settings.environment)
    return application


app = create_application()
