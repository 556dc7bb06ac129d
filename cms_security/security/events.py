"""
In-memory security event log.
"""

from collections import Counter, deque
from typing import Any, Deque, Dict, List, Optional, Union

from ..observability.logging import get_logger
from ..observability.metrics import MetricsRegistry
from .alerts import AlertDispatcher
from .models import SecurityEvent, SecurityEventType, Severity

# Log level used for each severity
_SEVERITY_LOG_LEVEL = {
    Severity.CRITICAL: "error",
    Severity.HIGH: "error",
    Severity.MEDIUM: "warning",
    Severity.LOW: "info",
}


class SecurityEventLog:
    """
    Bounded ring buffer of security events.

    Once ``capacity`` events are held the oldest is evicted on every insert.
    Critical events are forwarded to the alert dispatcher; other severities
    are only forwarded when the caller asks for it.
    """

    def __init__(self,
                 capacity: int = 1000,
                 alerts: Optional[AlertDispatcher] = None,
                 metrics: Optional[MetricsRegistry] = None):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.alerts = alerts
        self.metrics = metrics
        self._events: Deque[SecurityEvent] = deque(maxlen=capacity)
        self.logger = get_logger("security_events")

    def __len__(self) -> int:
        return len(self._events)

    def record(self, event: SecurityEvent, alert: bool = False) -> None:
        """Append an event, log it by severity and forward it if required."""
        self._events.append(event)

        level = _SEVERITY_LOG_LEVEL[event.severity]
        getattr(self.logger, level)(
            "Security event",
            event_type=event.type.value,
            severity=event.severity.value,
            details=event.details,
            rule=event.rule,
            client_ip=event.context.client_ip,
            endpoint=event.context.endpoint,
            method=event.context.method,
        )

        if self.metrics:
            self.metrics.record_security_event(event.type.value, event.severity.value)

        if event.severity == Severity.CRITICAL or alert:
            if event.severity == Severity.CRITICAL:
                self.logger.critical(
                    "Critical security event",
                    event_type=event.type.value,
                    details=event.details,
                )
            if self.alerts:
                self.alerts.dispatch_event(event)

    def query(self,
              type: Optional[Union[SecurityEventType, str]] = None,
              severity: Optional[Union[Severity, str]] = None,
              limit: int = 50) -> List[SecurityEvent]:
        """Matching events, most recent first."""
        if limit <= 0:
            return []
        event_type = SecurityEventType(type) if type is not None else None
        level = Severity(severity) if severity is not None else None

        results = []
        for event in reversed(self._events):
            if event_type is not None and event.type != event_type:
                continue
            if level is not None and event.severity != level:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def summary(self, recent: int = 20) -> Dict[str, Any]:
        """Aggregate counts for the admin dashboard."""
        by_type = Counter(event.type.value for event in self._events)
        by_severity = Counter(event.severity.value for event in self._events)
        return {
            "totalEvents": len(self._events),
            "eventsByType": dict(by_type),
            "eventsBySeverity": dict(by_severity),
            "recentEvents": [event.to_dict() for event in self.query(limit=recent)],
        }

    def clear(self) -> None:
        self._events.clear()
        self.logger.info("Security event log cleared")
