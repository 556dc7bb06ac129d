"""Service container shared by the middleware and the admin API."""

from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from .config import Settings
from .observability.logging import get_logger
from .observability.metrics import MetricsRegistry
from .observability.performance import PerformanceMonitor
from .security.alerts import AlertDispatcher
from .security.events import SecurityEventLog
from .security.headers import SecurityHeadersManager
from .security.pipeline import RequestSecurityPipeline
from .security.rate_limiting import (
    CounterStore, MemoryCounterStore, RateLimiter, RedisCounterStore, SpeedLimiter,
)
from .security.sanitization import InputSanitizer, SanitizationConfig
from .security.waf import PatternRuleSet

logger = get_logger("services")


@dataclass
class SecurityServices:
    """Everything one application instance needs, built once at startup."""
    settings: Settings
    metrics: MetricsRegistry
    counter_store: CounterStore
    rate_limiter: RateLimiter
    rule_set: PatternRuleSet
    sanitizer: InputSanitizer
    alerts: AlertDispatcher
    event_log: SecurityEventLog
    headers: SecurityHeadersManager
    performance: PerformanceMonitor
    pipeline: RequestSecurityPipeline
    speed_limiter: Optional[SpeedLimiter] = None

    @classmethod
    def from_settings(cls, settings: Settings,
                      counter_store: Optional[CounterStore] = None) -> "SecurityServices":
        metrics = MetricsRegistry()

        if counter_store is None:
            counter_store = create_counter_store(settings)

        rate_limiter = RateLimiter.from_settings(settings, counter_store, metrics=metrics)
        speed_limiter = (
            SpeedLimiter.from_settings(settings, counter_store) if settings.speed_limit_enabled else None
        )
        rule_set = PatternRuleSet(max_scan_length=settings.waf_max_scan_length, metrics=metrics)
        sanitizer = InputSanitizer(SanitizationConfig(max_depth=settings.sanitization_max_depth))
        alerts = AlertDispatcher(
            webhook_url=settings.security_webhook_url,
            timeout=settings.alert_timeout_seconds,
            service_name=settings.service_name,
        )
        event_log = SecurityEventLog(
            capacity=settings.security_event_capacity,
            alerts=alerts,
            metrics=metrics,
        )
        headers = SecurityHeadersManager.from_settings(settings)
        performance = PerformanceMonitor(
            capacity=settings.performance_sample_capacity,
            slow_threshold_ms=settings.performance_slow_threshold_ms,
            retention_seconds=settings.performance_retention_seconds,
            max_endpoints=settings.performance_max_endpoints,
            metrics=metrics,
        )
        pipeline = RequestSecurityPipeline(
            settings,
            rate_limiter=rate_limiter,
            rule_set=rule_set,
            sanitizer=sanitizer,
            event_log=event_log,
            headers=headers,
            performance=performance,
            speed_limiter=speed_limiter,
        )

        return cls(
            settings=settings,
            metrics=metrics,
            counter_store=counter_store,
            rate_limiter=rate_limiter,
            rule_set=rule_set,
            sanitizer=sanitizer,
            alerts=alerts,
            event_log=event_log,
            headers=headers,
            performance=performance,
            pipeline=pipeline,
            speed_limiter=speed_limiter,
        )

    async def close(self) -> None:
        await self.alerts.aclose()
        await self.counter_store.close()


def create_counter_store(settings: Settings) -> CounterStore:
    """Counter store selected by ``rate_limit_storage``."""
    if settings.rate_limit_storage == "redis":
        logger.info("Using Redis counter store", redis_host=settings.redis_host, redis_port=settings.redis_port)
        return RedisCounterStore.from_url(settings.redis_url, **settings.get_connection_config())
    if settings.rate_limit_storage != "memory":
        raise ValueError(f"Unknown rate limit storage: {settings.rate_limit_storage}")
    logger.info("Using in-memory counter store; budgets are enforced per process")
    return MemoryCounterStore()


def get_services(request: Request) -> SecurityServices:
    """FastAPI dependency returning the application's services."""
    services = getattr(request.app.state, "security", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Security services not available")
    return services
