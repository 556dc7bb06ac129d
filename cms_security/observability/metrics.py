"""
Prometheus metrics for the CMS security pipeline.
"""

from typing import Dict, Any, List, Optional, Tuple

from prometheus_client import (
    Counter, Histogram, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)


class MetricsRegistry:
    """Registry for pipeline metrics."""

    def __init__(self, namespace: str = "cms", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        # One registry per app instance keeps test apps from colliding
        self.registry = registry or CollectorRegistry()
        self.metrics: Dict[str, Any] = {}
        self._setup_default_metrics()

    def _setup_default_metrics(self):
        """Set up default pipeline metrics."""

        self.http_requests_total = self.counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"]
        )

        self.http_request_duration = self.histogram(
            "http_request_duration_seconds",
            "HTTP request duration",
            ["method", "endpoint"],
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
        )

        self.security_events_total = self.counter(
            "security_events_total",
            "Total security events",
            ["event_type", "severity"]
        )

        self.waf_rule_matches_total = self.counter(
            "waf_rule_matches_total",
            "WAF rule matches",
            ["rule", "action"]
        )

        self.rate_limit_rejections_total = self.counter(
            "rate_limit_rejections_total",
            "Requests rejected by the rate limiter",
            ["tier"]
        )

    def counter(self, name: str, description: str, labels: List[str]) -> Counter:
        """Create or get a counter metric."""
        full_name = f"{self.namespace}_{name}"
        if full_name not in self.metrics:
            self.metrics[full_name] = Counter(
                full_name, description, labels, registry=self.registry
            )
        return self.metrics[full_name]

    def histogram(self, name: str, description: str, labels: List[str],
                  buckets: Optional[List[float]] = None) -> Histogram:
        """Create or get a histogram metric."""
        full_name = f"{self.namespace}_{name}"
        if full_name not in self.metrics:
            kwargs = {"registry": self.registry}
            if buckets:
                kwargs["buckets"] = buckets
            self.metrics[full_name] = Histogram(full_name, description, labels, **kwargs)
        return self.metrics[full_name]

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration_seconds: float):
        """Record an HTTP request."""
        self.http_requests_total.labels(
            method=method, endpoint=endpoint, status_code=str(status_code)
        ).inc()
        self.http_request_duration.labels(method=method, endpoint=endpoint).observe(duration_seconds)

    def record_security_event(self, event_type: str, severity: str):
        """Record a security event."""
        self.security_events_total.labels(event_type=event_type, severity=severity).inc()

    def record_waf_match(self, rule: str, action: str):
        """Record a WAF rule match."""
        self.waf_rule_matches_total.labels(rule=rule, action=action).inc()

    def record_rate_limit_rejection(self, tier: str):
        """Record a rate limit rejection."""
        self.rate_limit_rejections_total.labels(tier=tier).inc()

    def get_sample_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Read back a single sample, mainly for dashboards and tests."""
        return self.registry.get_sample_value(f"{self.namespace}_{name}", labels or {})

    def export(self) -> Tuple[bytes, str]:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
