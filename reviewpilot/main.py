"""
Application factory for the ReviewPilot webhook API
"""
import logging
from typing import Optional

from fastapi import FastAPI

from reviewpilot import __version__
from reviewpilot.api import billing_webhooks, sms_webhooks
from reviewpilot.core.config import Settings, get_settings
from reviewpilot.core.logging import setup_logging
from reviewpilot.core.observability import get_observability_manager
from reviewpilot.db.database import init_db

logger = logging.getLogger(__name__)

ROUTERS = [
    sms_webhooks.router,
    billing_webhooks.router,
]


def setup_health_endpoints(app: FastAPI, settings: Settings) -> None:
    """Liveness endpoint"""

    @app.get("/health")
    def health():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": __version__,
            "environment": settings.environment,
        }


def create_app(settings: Optional[Settings] = None, enable_metrics: bool = True) -> FastAPI:
    """
    Create the FastAPI application

    Args:
        settings: Settings override, defaults to the cached environment settings
        enable_metrics: Instrument handlers and expose /metrics

    Returns:
        Configured FastAPI application
    """
    settings = settings or get_settings()

    setup_logging(level=settings.log_level, json_logs=settings.use_json_logging or settings.is_production())

    observability = get_observability_manager()
    observability.initialize_sentry(settings.environment)

    if settings.auto_create_tables:
        init_db()

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        docs_url=None if settings.is_production() else "/docs",
        redoc_url=None,
    )

    for router in ROUTERS:
        app.include_router(router)
        logger.info(f"Router '{router.prefix}' loaded")

    setup_health_endpoints(app, settings)

    if enable_metrics:
        observability.initialize_prometheus(app)

    logger.info(f"ReviewPilot API created for {settings.environment} ({len(app.routes)} routes)")
    return app


app = create_app()
