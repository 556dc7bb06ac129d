"""
Security package for the CMS request pipeline.

Provides rate limiting, WAF pattern rules, input sanitization, security
headers, the security event log and the pipeline that ties them together.
"""

from .models import Severity, RuleAction, SecurityEventType, SecurityEvent, EventContext
from .exceptions import (
    SecurityPipelineError, RateLimitExceeded, SecurityPolicyViolation, SanitizationFailure,
    EventStoreUnavailable, PayloadTooLarge, ScanLimitExceeded, GeoBlocked,
)
from .waf import SecurityRule, RuleMatch, ScanTarget, PatternRuleSet, default_rules
from .rate_limiting import (
    RateLimitTier, RateLimitResult, WindowHit, CounterStore, MemoryCounterStore, RedisCounterStore,
    RateLimiter, SpeedLimiter,
)
from .sanitization import SanitizationConfig, InputSanitizer
from .alerts import AlertDispatcher
from .events import SecurityEventLog
from .headers import SecurityHeadersConfig, SecurityHeadersManager, CSPDirective, ReferrerPolicy
from .pipeline import PipelineState, RequestContext, RequestSecurityPipeline
from .middleware import RequestSecurityMiddleware
from .routing import SanitizedRoute

__all__ = [
    "Severity",
    "RuleAction",
    "SecurityEventType",
    "SecurityEvent",
    "EventContext",
    "SecurityPipelineError",
    "RateLimitExceeded",
    "SecurityPolicyViolation",
    "SanitizationFailure",
    "EventStoreUnavailable",
    "PayloadTooLarge",
    "ScanLimitExceeded",
    "GeoBlocked",
    "SecurityRule",
    "RuleMatch",
    "ScanTarget",
    "PatternRuleSet",
    "default_rules",
    "RateLimitTier",
    "RateLimitResult",
    "WindowHit",
    "CounterStore",
    "MemoryCounterStore",
    "RedisCounterStore",
    "RateLimiter",
    "SpeedLimiter",
    "SanitizationConfig",
    "InputSanitizer",
    "AlertDispatcher",
    "SecurityEventLog",
    "SecurityHeadersConfig",
    "SecurityHeadersManager",
    "CSPDirective",
    "ReferrerPolicy",
    "PipelineState",
    "RequestContext",
    "RequestSecurityPipeline",
    "RequestSecurityMiddleware",
    "SanitizedRoute",
]
