"""
Request security pipeline.

Every request moves through the same states::

    RECEIVED -> RATE_CHECKED -> PATTERN_SCANNED -> SANITIZED -> HANDLED -> LOGGED

A request rejected by the rate limiter or the WAF skips straight to LOGGED.
The pipeline itself knows nothing about ASGI; ``RequestSecurityMiddleware``
feeds it a ``RequestContext`` and turns its exceptions into responses.
"""

import re
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..observability.logging import get_logger, redact_sensitive
from ..observability.performance import UNMATCHED_ENDPOINT, PerformanceMonitor
from .events import SecurityEventLog
from .exceptions import (
    EventStoreUnavailable, GeoBlocked, PayloadTooLarge, RateLimitExceeded,
    SanitizationFailure, ScanLimitExceeded, SecurityPipelineError, SecurityPolicyViolation,
)
from .headers import SecurityHeadersManager
from .models import EventContext, SecurityEvent, SecurityEventType, Severity, utc_now
from .rate_limiting import RateLimiter, RateLimitResult, RateLimitTier, SpeedLimiter, UNKNOWN_CLIENT
from .sanitization import InputSanitizer
from .waf import PatternRuleSet, RuleMatch, ScanTarget

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

# Request bodies up to this size are kept in event snapshots
_SNAPSHOT_BODY_LIMIT = 2048


class PipelineState(str, Enum):
    """Where a request is in the pipeline."""
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    PATTERN_SCANNED = "pattern_scanned"
    SANITIZED = "sanitized"
    HANDLED = "handled"
    LOGGED = "logged"


class BodyKind(str, Enum):
    """How a request body was read."""
    NONE = "none"
    JSON = "json"
    FORM = "form"
    RAW = "raw"
    STREAM = "stream"


@dataclass
class RequestContext:
    """Per-request data carried through the pipeline."""
    request_id: str
    method: str
    path: str
    client_ip: str = UNKNOWN_CLIENT
    headers: Dict[str, str] = field(default_factory=dict)
    query_pairs: List[Tuple[str, str]] = field(default_factory=list)
    raw_body: bytes = b""
    body: Any = None
    body_kind: BodyKind = BodyKind.NONE
    state: PipelineState = PipelineState.RECEIVED
    history: List[PipelineState] = field(default_factory=lambda: [PipelineState.RECEIVED])
    started_at: float = field(default_factory=time.perf_counter)
    tier: Optional[RateLimitTier] = None
    rate_limit: Optional[RateLimitResult] = None
    speed_delay_ms: Optional[int] = None
    speed_window_id: Optional[str] = None
    matches: List[RuleMatch] = field(default_factory=list)
    rejection: Optional[SecurityPipelineError] = None
    error_recorded: bool = False
    response_started: bool = False
    status_code: Optional[int] = None
    query_changed: bool = False
    body_changed: bool = False
    route_path: Optional[str] = None

    @property
    def user_agent(self) -> Optional[str]:
        return self.headers.get("user-agent")

    @property
    def referer(self) -> Optional[str]:
        return self.headers.get("referer")

    @property
    def duration_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000

    def advance(self, state: PipelineState):
        self.state = state
        self.history.append(state)

    def snapshot(self) -> Dict[str, Any]:
        """Redacted view of the request for event records."""
        data: Dict[str, Any] = {
            "url": self.path,
            "query": dict(self.query_pairs),
        }
        if self.body_kind == BodyKind.JSON and len(self.raw_body) <= _SNAPSHOT_BODY_LIMIT:
            data["body"] = self.body
        elif self.body_kind == BodyKind.FORM and len(self.raw_body) <= _SNAPSHOT_BODY_LIMIT:
            data["body"] = dict(self.body)
        elif self.raw_body:
            data["bodySize"] = len(self.raw_body)
        return redact_sensitive(data)

    def event_context(self) -> EventContext:
        return EventContext(
            client_ip=self.client_ip,
            user_agent=self.user_agent,
            endpoint=self.path,
            method=self.method,
            request_snapshot=self.snapshot(),
        )


def client_ip_from(headers: Dict[str, str], peer: Optional[str], trust_proxy_headers: bool = True) -> str:
    """Resolve the client address, honouring proxy headers when trusted."""
    if trust_proxy_headers:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    return peer or UNKNOWN_CLIENT


def _matches_prefix(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


class RequestSecurityPipeline:
    """Applies rate limiting, pattern scanning and sanitization to requests."""

    def __init__(self,
                 settings: Any,
                 rate_limiter: RateLimiter,
                 rule_set: PatternRuleSet,
                 sanitizer: InputSanitizer,
                 event_log: SecurityEventLog,
                 headers: SecurityHeadersManager,
                 performance: Optional[PerformanceMonitor] = None,
                 speed_limiter: Optional[SpeedLimiter] = None):
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.rule_set = rule_set
        self.sanitizer = sanitizer
        self.event_log = event_log
        self.headers = headers
        self.performance = performance
        self.speed_limiter = speed_limiter
        self.blocked_countries = {code.upper() for code in settings.blocked_countries}
        self.logger = get_logger("security_pipeline")

    def create_context(self,
                       method: str,
                       path: str,
                       headers: Dict[str, str],
                       query_pairs: List[Tuple[str, str]],
                       peer: Optional[str] = None) -> RequestContext:
        request_id = headers.get("x-request-id", "")
        if not _REQUEST_ID.match(request_id):
            request_id = uuid.uuid4().hex
        return RequestContext(
            request_id=request_id,
            method=method.upper(),
            path=path,
            client_ip=client_ip_from(headers, peer, self.settings.trust_proxy_headers),
            headers=headers,
            query_pairs=query_pairs,
        )

    def is_exempt(self, path: str) -> bool:
        return any(_matches_prefix(path, exempt) for exempt in self.settings.exempt_paths)

    def is_sensitive(self, path: str) -> bool:
        return any(_matches_prefix(path, sensitive) for sensitive in self.settings.sensitive_paths)

    # Stages

    def check_access(self, ctx: RequestContext) -> None:
        """Reject requests from blocked countries."""
        if self.is_sensitive(ctx.path):
            self.logger.info(
                "Sensitive endpoint accessed",
                method=ctx.method,
                path=ctx.path,
                client_ip=ctx.client_ip,
                user_agent=ctx.user_agent,
            )

        if not self.blocked_countries:
            return
        country = (ctx.headers.get("cf-ipcountry") or ctx.headers.get("x-country-code") or "").upper()
        if country and country in self.blocked_countries:
            raise GeoBlocked(f"Requests from {country} are blocked")

    async def check_rate_limit(self, ctx: RequestContext) -> None:
        """
        RECEIVED -> RATE_CHECKED.

        Raises:
            RateLimitExceeded: The client is over budget for the request tier
            EventStoreUnavailable: The counter store failed and the policy is fail-closed
        """
        if self.settings.rate_limit_enabled:
            ctx.tier = self.rate_limiter.tier_for(ctx.method, ctx.path)

        if ctx.tier is not None:
            try:
                ctx.rate_limit = await self.rate_limiter.hit(ctx.tier.name, ctx.client_ip)
            except EventStoreUnavailable:
                if not self.settings.rate_limit_fail_open:
                    ctx.tier = None
                    raise
                self.logger.warning(
                    "Rate limit store unavailable, allowing request",
                    tier=ctx.tier.name,
                    client_ip=ctx.client_ip,
                )
                ctx.tier = None

        ctx.advance(PipelineState.RATE_CHECKED)

        if ctx.rate_limit is not None and not ctx.rate_limit.allowed:
            raise RateLimitExceeded(ctx.tier.name, ctx.rate_limit.retry_after_seconds)

        if self.speed_limiter is not None:
            try:
                ctx.speed_delay_ms, ctx.speed_window_id = await self.speed_limiter.throttle(ctx.client_ip)
            except EventStoreUnavailable as e:
                self.logger.warning("Speed limit store unavailable", error=str(e))

    def check_body_size(self, size: int) -> None:
        if size > self.settings.max_body_size:
            raise PayloadTooLarge(f"Body of {size} bytes exceeds {self.settings.max_body_size}")

    def scan(self, ctx: RequestContext) -> List[RuleMatch]:
        """
        RATE_CHECKED -> PATTERN_SCANNED.

        Every match is recorded as an event. A failure inside the scanner is
        recorded and the request continues unscanned.

        Raises:
            SecurityPolicyViolation: A matched rule has the block action
            ScanLimitExceeded: A request field is too long to scan in full
        """
        matches: List[RuleMatch] = []
        if self.settings.waf_enabled:
            try:
                target = ScanTarget.from_request(
                    path=ctx.path,
                    query_pairs=ctx.query_pairs,
                    body=ctx.body if ctx.body_kind != BodyKind.STREAM else None,
                    user_agent=ctx.user_agent,
                    referer=ctx.referer,
                )
                matches = self.rule_set.scan_target(target)
            except ScanLimitExceeded:
                raise
            except Exception as e:
                self._record_stage_failure(ctx, "WAF scan failed", e)
                matches = []

        ctx.matches = matches
        ctx.advance(PipelineState.PATTERN_SCANNED)

        if matches:
            self._record_matches(ctx, matches)
            if self.rule_set.blocking(matches):
                raise SecurityPolicyViolation([m.rule for m in matches if m.blocks])
        return matches

    def sanitize(self, ctx: RequestContext) -> None:
        """
        PATTERN_SCANNED -> SANITIZED.

        Query pairs and parsed bodies are replaced with sanitized copies. If
        sanitization fails the failure is recorded and the request continues
        with the data it had.
        """
        if self.settings.sanitization_enabled:
            try:
                pairs = self.sanitizer.sanitize_pairs(ctx.query_pairs)
                if pairs != ctx.query_pairs:
                    ctx.query_pairs = pairs
                    ctx.query_changed = True

                if ctx.body_kind == BodyKind.JSON:
                    body = self.sanitizer.sanitize(ctx.body)
                elif ctx.body_kind == BodyKind.FORM:
                    body = self.sanitizer.sanitize_pairs(ctx.body)
                else:
                    body = ctx.body
                if body != ctx.body:
                    ctx.body = body
                    ctx.body_changed = True
            except Exception as e:
                failure = SanitizationFailure(str(e))
                self._record_stage_failure(ctx, "Input sanitization failed", failure)

        ctx.advance(PipelineState.SANITIZED)

    def mark_handled(self, ctx: RequestContext) -> None:
        ctx.advance(PipelineState.HANDLED)

    # Outcomes

    def reject(self, ctx: RequestContext, error: SecurityPipelineError) -> None:
        """Record a request the pipeline refused to pass on."""
        ctx.rejection = error
        if isinstance(error, RateLimitExceeded):
            self._record(ctx, SecurityEventType.RATE_LIMIT, Severity.LOW,
                         f"Rate limit exceeded for tier {error.tier}")
        elif isinstance(error, GeoBlocked):
            self._record(ctx, SecurityEventType.UNAUTHORIZED_ACCESS, Severity.MEDIUM, str(error))
        elif isinstance(error, PayloadTooLarge):
            self._record(ctx, SecurityEventType.INVALID_INPUT, Severity.LOW, str(error))
        elif isinstance(error, EventStoreUnavailable):
            self.logger.error("Rejecting request, rate limit store unavailable", client_ip=ctx.client_ip)

    def handle_exception(self, ctx: RequestContext, exc: Exception) -> Dict[str, Any]:
        """Record an unhandled handler exception and build the 500 body."""
        ctx.error_recorded = True
        self.logger.error(
            "Unhandled exception in request handler",
            method=ctx.method,
            path=ctx.path,
            error_type=type(exc).__name__,
            exc_info=exc,
        )
        self._record(ctx, SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.MEDIUM,
                     f"Unhandled {type(exc).__name__} in request handler")

        body: Dict[str, Any] = {
            "success": False,
            "error": "Internal server error",
            "timestamp": utc_now().isoformat(),
        }
        if self.settings.debug:
            body["message"] = str(exc)
        return body

    def response_headers(self, ctx: Optional[RequestContext], headers: List[tuple]) -> List[tuple]:
        """Raw ASGI headers for a response passing through the pipeline."""
        headers = self.headers.apply(headers)
        if ctx is None:
            return headers
        if ctx.rate_limit is not None:
            present = {name.lower() for name, _ in headers}
            for name, value in ctx.rate_limit.headers().items():
                raw = name.lower().encode("latin-1")
                if raw not in present:
                    headers.append((raw, value.encode("latin-1")))
        headers.append((b"x-request-id", ctx.request_id.encode("latin-1")))
        return headers

    async def finish(self, ctx: RequestContext) -> None:
        """
        HANDLED -> LOGGED.

        Refunds successful requests for tiers that skip them, classifies
        error responses and slow requests, and records a performance sample.
        """
        status = ctx.status_code or 500
        duration_ms = ctx.duration_ms

        if ctx.rejection is None and status < 400:
            await self._refund(ctx)

        if status >= 400 and ctx.rejection is None and not ctx.error_recorded:
            event_type, severity = self.classify_status(ctx.path, status)
            self._record(ctx, event_type, severity, f"{ctx.method} {ctx.path} returned {status}")

        if duration_ms > self.settings.slow_request_threshold_ms:
            self._record(ctx, SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.LOW,
                         f"Slow request: {duration_ms:.0f}ms")

        if self.performance is not None:
            self.performance.record(ctx.method, ctx.path, duration_ms, status,
                                    route=ctx.route_path or UNMATCHED_ENDPOINT)

        ctx.advance(PipelineState.LOGGED)
        self.logger.info(
            "Request completed",
            method=ctx.method,
            path=ctx.path,
            status_code=status,
            duration_ms=round(duration_ms, 2),
            client_ip=ctx.client_ip,
            states=[state.value for state in ctx.history],
        )

    def classify_status(self, path: str, status: int) -> Tuple[SecurityEventType, Severity]:
        """Event type and severity for an error response."""
        if _matches_prefix(path, self.settings.auth_path_prefix):
            return SecurityEventType.AUTH_FAILURE, Severity.MEDIUM
        if status in (401, 403):
            return SecurityEventType.UNAUTHORIZED_ACCESS, Severity.MEDIUM
        if status in (400, 422):
            return SecurityEventType.INVALID_INPUT, Severity.LOW
        return SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.LOW

    # Helpers

    async def _refund(self, ctx: RequestContext):
        try:
            if ctx.tier is not None and ctx.rate_limit is not None and ctx.tier.skip_successful_requests:
                await self.rate_limiter.refund(ctx.tier.name, ctx.client_ip, ctx.rate_limit.window_id)
            if self.speed_limiter is not None and ctx.speed_window_id is not None:
                await self.speed_limiter.refund(ctx.client_ip, ctx.speed_window_id)
        except EventStoreUnavailable as e:
            self.logger.warning("Could not refund successful request", error=str(e))

    def _record_matches(self, ctx: RequestContext, matches: List[RuleMatch]):
        context = ctx.event_context()
        forward = self.settings.waf_forward_incidents
        for match in matches:
            event_type = SecurityEventType.WAF_BLOCK if match.blocks else SecurityEventType.SUSPICIOUS_ACTIVITY
            self.event_log.record(
                SecurityEvent(
                    type=event_type,
                    severity=match.severity,
                    details=f"Security rule triggered: {match.rule} ({match.matched!r})",
                    context=context,
                    rule=match.rule,
                ),
                alert=forward,
            )

    def _record_stage_failure(self, ctx: RequestContext, message: str, exc: Exception):
        self.logger.error(message, error=str(exc), error_type=type(exc).__name__, path=ctx.path)
        self._record(ctx, SecurityEventType.SUSPICIOUS_ACTIVITY, Severity.LOW, f"{message}: {exc}")

    def _record(self, ctx: RequestContext, event_type: SecurityEventType, severity: Severity, details: str):
        self.event_log.record(SecurityEvent(
            type=event_type,
            severity=severity,
            details=details,
            context=ctx.event_context(),
        ))
