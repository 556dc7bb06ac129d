"""Application factory for the CMS security pipeline."""

from contextlib import asynccontextmanager
from typing import Iterable, Optional

import uvicorn
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import health, security
from .config import Settings, get_settings
from .observability.logging import get_logger, setup_logging
from .security.middleware import RequestSecurityMiddleware
from .security.rate_limiting import CounterStore
from .services import SecurityServices

logger = get_logger("app")


def create_app(settings: Optional[Settings] = None,
               routers: Iterable[APIRouter] = (),
               counter_store: Optional[CounterStore] = None) -> FastAPI:
    """
    Build a FastAPI application with the security pipeline in front of it.

    Args:
        settings: Settings to use, ``get_settings()`` when omitted
        routers: Business routers of the embedding CMS
        counter_store: Rate limit counter store, built from settings when omitted

    Returns:
        The application, with its services on ``app.state.security``
    """
    settings = settings or get_settings()
    services = SecurityServices.from_settings(settings, counter_store=counter_store)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            settings.service_name,
            level=settings.log_level,
            format_type=settings.log_format,
            enable_correlation=settings.enable_correlation,
            logger_levels=settings.logger_levels,
        )
        logger.info("Starting security pipeline", **settings.get_service_info())

        if not await services.counter_store.ping():
            logger.warning("Counter store unreachable at startup",
                           storage=settings.rate_limit_storage,
                           fail_open=settings.rate_limit_fail_open)
        try:
            yield
        finally:
            logger.info("Stopping security pipeline", pending_alerts=services.alerts.pending)
            await services.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.security = services

    app.add_middleware(RequestSecurityMiddleware, pipeline=services.pipeline)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=settings.cors_methods,
        allow_headers=settings.cors_headers,
    )

    app.add_api_route(settings.health_check_path, health.health_check, methods=["GET"], tags=["Health"])
    if settings.enable_metrics:
        app.add_api_route(settings.metrics_path, health.prometheus_metrics, methods=["GET"],
                          tags=["Metrics"], include_in_schema=False)
    app.include_router(security.router, prefix="/api/security", tags=["Security"])

    for router in routers:
        app.include_router(router)

    return app


def main():
    """Main entry point."""
    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
