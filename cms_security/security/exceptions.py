"""Security pipeline exceptions."""

from typing import Any, Dict, List, Optional

from .models import utc_now


class SecurityPipelineError(Exception):
    """Base exception for security pipeline errors."""

    code = "SECURITY_ERROR"
    status_code = 500
    public_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)

    def to_body(self) -> Dict[str, Any]:
        """Structured JSON body returned to the client."""
        return {
            "success": False,
            "error": self.public_message,
            "code": self.code,
        }

    def response_headers(self) -> Dict[str, str]:
        return {}


class RateLimitExceeded(SecurityPipelineError):
    """Raised when a client exhausts its budget for the current window."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    public_message = "Too many requests"

    def __init__(self, tier: str, retry_after: int):
        super().__init__(f"Rate limit exceeded for tier {tier}")
        self.tier = tier
        self.retry_after = retry_after

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body["retryAfter"] = self.retry_after
        return body

    def response_headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class SecurityPolicyViolation(SecurityPipelineError):
    """Raised when a blocking WAF rule matches the request."""

    code = "SECURITY_VIOLATION"
    status_code = 403
    public_message = "Request blocked by security policy"

    def __init__(self, rules: List[str]):
        super().__init__(f"Blocked by rules: {', '.join(rules)}")
        self.rules = rules

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body["timestamp"] = utc_now().isoformat()
        return body


class GeoBlocked(SecurityPipelineError):
    """Raised when the request originates from a blocked country."""

    code = "GEO_BLOCKED"
    status_code = 403
    public_message = "Access denied from your location"


class PayloadTooLarge(SecurityPipelineError):
    """Raised when a buffered request body exceeds the configured limit."""

    code = "PAYLOAD_TOO_LARGE"
    status_code = 413
    public_message = "Request entity too large"


class ScanLimitExceeded(PayloadTooLarge):
    """Raised when a request field is too long to be scanned in full."""

    def __init__(self, field: str, length: int, limit: int):
        super().__init__(f"Field {field} has {length} characters, scan limit is {limit}")
        self.field = field


class SanitizationFailure(SecurityPipelineError):
    """Raised internally when input could not be sanitized."""

    code = "SANITIZATION_FAILURE"


class EventStoreUnavailable(SecurityPipelineError):
    """Raised when the shared counter store cannot be reached."""

    code = "RATE_LIMIT_UNAVAILABLE"
    status_code = 503
    public_message = "Service temporarily unavailable"
