# backend/tipu/main.py
from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator, Dict

from fastapi import APIRouter, FastAPI, Response

from .api.errors import domain_exception_handler
from .core.config import get_settings
from .core.constants import BRAND_NAME
from .core.exceptions import DomainException
from .monitoring.prometheus_metrics import prometheus_metrics
from .routes import bookings as bookings_v1
from .routes import payments as payments_v1
from .routes import stripe_webhooks as stripe_webhooks_v1

API_VERSION = "1.0.0"

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())
    logger.info(
        "Starting %s API (environment=%s, payment_provider=%s, meeting_provider=%s)",
        BRAND_NAME,
        settings.environment,
        settings.payment_provider,
        settings.meeting_provider,
    )
    yield
    logger.info("Shutting down %s API", BRAND_NAME)


def create_app() -> FastAPI:
    app = FastAPI(
        title=f"{BRAND_NAME} API",
        description="Lesson booking and payment orchestration",
        version=API_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=app_lifespan,
    )
    app.add_exception_handler(DomainException, domain_exception_handler)

    api_v1 = APIRouter(prefix="/api/v1")
    api_v1.include_router(bookings_v1.router, prefix="/bookings")
    api_v1.include_router(payments_v1.router, prefix="/payments")
    api_v1.include_router(stripe_webhooks_v1.router, prefix="/webhooks")
    app.include_router(api_v1)

    @app.get("/health", tags=["health"])
    def health() -> Dict[str, str]:
        return {"status": "healthy", "service": BRAND_NAME.lower()}

    @app.get("/metrics", include_in_schema=False)
    def metrics() -> Response:
        return Response(
            content=prometheus_metrics.get_metrics(),
            media_type=prometheus_metrics.content_type,
        )

    return app


app = create_app()
