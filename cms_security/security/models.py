"""
Shared security types: severities, rule actions and security events.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """Severity of a rule match or security event."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RuleAction(str, Enum):
    """What the pipeline does when a rule matches."""
    BLOCK = "block"
    LOG = "log"


class SecurityEventType(str, Enum):
    """Categories of security events."""
    AUTH_FAILURE = "auth_failure"
    RATE_LIMIT = "rate_limit"
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    WAF_BLOCK = "waf_block"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventContext:
    """Where a security event came from."""
    client_ip: str = "unknown"
    user_agent: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    request_snapshot: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ip": self.client_ip,
            "userAgent": self.user_agent,
            "endpoint": self.endpoint,
            "method": self.method,
            "request": self.request_snapshot,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class SecurityEvent:
    """An immutable security event held by the event log."""
    type: SecurityEventType
    severity: Severity
    details: str
    context: EventContext = field(default_factory=EventContext)
    rule: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "details": self.details,
            "context": self.context.to_dict(),
        }
        if self.rule:
            data["rule"] = self.rule
        return data
