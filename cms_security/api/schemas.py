"""Request and response schemas for the admin API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..security.models import SecurityEventType, Severity


class SecurityAlertRequest(BaseModel):
    """Operator-raised security alert."""
    type: SecurityEventType = SecurityEventType.SUSPICIOUS_ACTIVITY
    severity: Severity = Severity.MEDIUM
    message: str = Field(..., min_length=1, max_length=500)
    details: Dict[str, Any] = Field(default_factory=dict)


class SecurityMetricsData(BaseModel):
    totalEvents: int
    eventsByType: Dict[str, int]
    eventsBySeverity: Dict[str, int]
    recentEvents: List[Dict[str, Any]]


class SecurityMetricsResponse(BaseModel):
    success: bool = True
    data: SecurityMetricsData


class SecurityEventsResponse(BaseModel):
    success: bool = True
    data: List[Dict[str, Any]]
    count: int


class PerformanceResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any]


class AlertResponse(BaseModel):
    success: bool = True
    message: str
    eventId: Optional[str] = None
