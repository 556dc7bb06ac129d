"""Admin endpoints exposing security events and request performance."""

import hmac
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..observability.logging import redact_sensitive
from ..security.models import EventContext, SecurityEvent, SecurityEventType, Severity
from ..security.pipeline import client_ip_from
from ..services import SecurityServices, get_services
from .schemas import (
    AlertResponse, PerformanceResponse, SecurityAlertRequest, SecurityEventsResponse,
    SecurityMetricsResponse,
)

logger = structlog.get_logger()


def require_admin(request: Request, services: SecurityServices = Depends(get_services)) -> SecurityServices:
    """Allow only callers presenting the admin token, from an allowed address."""
    settings = services.settings
    expected = settings.admin_token
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API disabled")

    provided = request.headers.get(settings.admin_api_key_header, "")
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin access required")

    if settings.admin_allowed_ips:
        peer = request.client.host if request.client else None
        client_ip = client_ip_from(
            {k.lower(): v for k, v in request.headers.items()}, peer, settings.trust_proxy_headers
        )
        if client_ip not in settings.admin_allowed_ips:
            logger.warning("Admin access from disallowed address", client_ip=client_ip)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Address not allowed")

    return services


router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/metrics", response_model=SecurityMetricsResponse)
async def get_security_metrics(
    recent: int = Query(20, ge=0, le=200),
    services: SecurityServices = Depends(get_services),
):
    """Event totals by type and severity, plus the most recent events."""
    return {"success": True, "data": services.event_log.summary(recent=recent)}


@router.get("/events", response_model=SecurityEventsResponse)
async def list_security_events(
    type: Optional[SecurityEventType] = None,
    severity: Optional[Severity] = None,
    limit: int = Query(50, ge=1, le=1000),
    services: SecurityServices = Depends(get_services),
):
    """Events filtered by type and severity, most recent first."""
    events = services.event_log.query(type=type, severity=severity, limit=limit)
    return {
        "success": True,
        "data": [event.to_dict() for event in events],
        "count": len(events),
    }


@router.get("/performance", response_model=PerformanceResponse)
async def get_performance(services: SecurityServices = Depends(get_services)):
    """Request duration statistics and per-endpoint aggregates."""
    return {
        "success": True,
        "data": {
            "stats": services.performance.get_stats(),
            "endpoints": services.performance.get_endpoint_stats(),
        },
    }


@router.post("/alert", response_model=AlertResponse)
async def raise_security_alert(
    alert: SecurityAlertRequest,
    request: Request,
    services: SecurityServices = Depends(get_services),
):
    """Record an operator-raised alert and forward it to the webhook."""
    peer = request.client.host if request.client else None
    headers = {k.lower(): v for k, v in request.headers.items()}
    event = SecurityEvent(
        type=alert.type,
        severity=alert.severity,
        details=f"{alert.type.value}: {alert.message}",
        context=EventContext(
            client_ip=client_ip_from(headers, peer, services.settings.trust_proxy_headers),
            user_agent=headers.get("user-agent"),
            endpoint=request.url.path,
            method=request.method,
            request_snapshot=redact_sensitive({"details": alert.details}),
        ),
    )
    services.event_log.record(event, alert=True)

    logger.info("Security alert raised", event_type=alert.type.value, severity=alert.severity.value)
    return {"success": True, "message": "Security alert logged", "eventId": event.id}
