"""Health and metrics endpoints, mounted at the configured paths by ``create_app``."""

from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import Depends, Response

from ..services import SecurityServices, get_services

logger = structlog.get_logger()


async def health_check(services: SecurityServices = Depends(get_services)) -> Dict[str, Any]:
    """Service information and counter store reachability."""
    store_ok = await services.counter_store.ping()
    if not store_ok:
        logger.warning("Counter store unreachable during health check")

    return {
        "status": "healthy" if store_ok else "degraded",
        "service": services.settings.service_name,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "info": services.settings.get_service_info(),
        "checks": {
            "counter_store": "ok" if store_ok else "unreachable",
            "security_events": len(services.event_log),
            "pending_alerts": services.alerts.pending,
        },
    }


async def prometheus_metrics(services: SecurityServices = Depends(get_services)) -> Response:
    """Prometheus exposition of the pipeline metrics."""
    content, content_type = services.metrics.export()
    return Response(content=content, media_type=content_type)
