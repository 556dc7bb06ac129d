"""Security configuration for the CMS security pipeline."""

from typing import Dict, List, Optional
from pydantic import Field, SecretStr
from .base import BaseConfig


class SecurityConfig(BaseConfig):
    """Security configuration settings."""

    # Rate limiting settings
    rate_limit_enabled: bool = Field(default=True, description="Enable rate limiting")
    rate_limit_storage: str = Field(default="memory", description="Counter store backend (memory or redis)")
    rate_limit_fail_open: bool = Field(
        default=False, description="Allow requests when the counter store is unavailable"
    )

    auth_rate_limit_window_seconds: int = Field(default=15 * 60, description="Auth tier window")
    auth_rate_limit_max_requests: int = Field(default=5, description="Auth tier budget")
    api_rate_limit_window_seconds: int = Field(default=15 * 60, description="API tier window")
    api_rate_limit_max_requests: int = Field(default=100, description="API tier budget")
    api_rate_limit_skip_successful: bool = Field(default=True, description="Do not count successful API requests")
    public_rate_limit_window_seconds: int = Field(default=15 * 60, description="Public tier window")
    public_rate_limit_max_requests: int = Field(default=1000, description="Public tier budget")
    public_rate_limit_skip_successful: bool = Field(default=True, description="Do not count successful public requests")
    upload_rate_limit_window_seconds: int = Field(default=60 * 60, description="Upload tier window")
    upload_rate_limit_max_requests: int = Field(default=50, description="Upload tier budget")

    auth_path_prefix: str = Field(default="/api/auth", description="Paths rate limited by the auth tier")
    api_path_prefix: str = Field(default="/api", description="Paths rate limited by the api tier")
    upload_path_prefixes: List[str] = Field(
        default=["/api/media/upload", "/api/media"],
        description="Paths whose write requests are rate limited by the upload tier"
    )

    # Progressive delay (speed limiting)
    speed_limit_enabled: bool = Field(default=False, description="Enable progressive delay")
    speed_limit_window_seconds: int = Field(default=15 * 60, description="Speed limit window")
    speed_limit_delay_after: int = Field(default=10, description="Requests allowed without delay")
    speed_limit_delay_ms: int = Field(default=500, description="Delay added per request over the threshold")
    speed_limit_max_delay_ms: int = Field(default=20_000, description="Maximum delay")

    # Request inspection
    waf_enabled: bool = Field(default=True, description="Enable WAF pattern scanning")
    waf_forward_incidents: bool = Field(default=True, description="Forward WAF incidents to the alert webhook")
    waf_max_scan_length: int = Field(
        default=2_097_152, description="Maximum characters scanned per request field, longer fields are rejected"
    )
    sanitization_enabled: bool = Field(default=True, description="Enable input sanitization")
    sanitization_max_depth: int = Field(default=32, description="Maximum nesting depth walked by the sanitizer")
    max_body_size: int = Field(default=1_048_576, description="Maximum buffered request body in bytes")
    trust_proxy_headers: bool = Field(default=True, description="Read client IP from X-Forwarded-For/X-Real-IP")
    blocked_countries: List[str] = Field(default=[], description="ISO country codes rejected by the geo block")
    exempt_paths: List[str] = Field(default=["/health", "/metrics"], description="Paths that bypass the pipeline")
    sensitive_paths: List[str] = Field(
        default=[
            "/api/auth/login",
            "/api/auth/register",
            "/api/auth/reset-password",
            "/api/admin",
            "/api/users",
        ],
        description="Paths logged on every request"
    )

    # Event log and alerting
    slow_request_threshold_ms: int = Field(default=5000, description="Slow request threshold")
    security_event_capacity: int = Field(default=1000, description="Security event ring buffer capacity")
    security_webhook_url: Optional[str] = Field(default=None, description="External alert webhook URL")
    alert_timeout_seconds: float = Field(default=5.0, description="Alert webhook timeout")

    # Performance monitoring
    performance_sample_capacity: int = Field(default=1000, description="Performance samples kept in memory")
    performance_slow_threshold_ms: int = Field(default=1000, description="Slow request threshold for performance alerts")
    performance_retention_seconds: int = Field(default=7 * 24 * 60 * 60, description="Aggregate retention")
    performance_max_endpoints: int = Field(default=500, description="Distinct endpoints tracked before new ones share one bucket")

    # Admin surface
    admin_api_key: Optional[SecretStr] = Field(default=None, description="Token required by admin endpoints")
    admin_api_key_header: str = Field(default="X-Admin-Token", description="Admin token header name")
    admin_allowed_ips: List[str] = Field(default=[], description="Client IPs allowed on admin endpoints")

    # HSTS settings
    hsts_enabled: bool = Field(default=True, description="Enable HSTS")
    hsts_max_age: int = Field(default=31536000, description="HSTS max age in seconds")
    hsts_include_subdomains: bool = Field(default=True, description="HSTS include subdomains")
    hsts_preload: bool = Field(default=True, description="HSTS preload")

    # Content Security Policy settings
    csp_enabled: bool = Field(default=True, description="Enable CSP")
    csp_report_only: bool = Field(default=False, description="Send CSP in report-only mode")
    csp_extra_sources: Dict[str, List[str]] = Field(
        default={}, description="Sources added to CSP directives, keyed by directive name such as img-src"
    )

    # Security headers settings
    x_frame_options: str = Field(default="DENY", description="X-Frame-Options header")
    referrer_policy: str = Field(default="strict-origin-when-cross-origin", description="Referrer-Policy header")
    security_headers_custom: Dict[str, str] = Field(default={}, description="Extra headers added to every response")

    @property
    def admin_token(self) -> Optional[str]:
        """Get admin API token."""
        return self.admin_api_key.get_secret_value() if self.admin_api_key else None
