"""
Tests for performance monitoring, metrics and log redaction.
"""
import pytest

from cms_security.observability.logging import (
    REDACTED, bind_request_context, redact_sensitive, request_id, reset_request_context,
)
from cms_security.observability.metrics import MetricsRegistry
from cms_security.observability.performance import PerformanceMonitor, normalize_path


class TestNormalizePath:
    """Path normalization for endpoint aggregates."""

    @pytest.mark.parametrize("path,expected", [
        ("/api/posts/42", "/api/posts/:id"),
        ("/api/posts/42/comments/7", "/api/posts/:id/comments/:id"),
        ("/api/users/123e4567-e89b-12d3-a456-426614174000", "/api/users/:id"),
        ("/api/posts/hello-world", "/api/posts/hello-world"),
        ("/", "/"),
    ])
    def test_normalize(self, path, expected):
        assert normalize_path(path) == expected


class TestPerformanceMonitor:
    """Request samples and aggregates."""

    @pytest.fixture
    def monitor(self, clock):
        return PerformanceMonitor(capacity=100, slow_threshold_ms=1000, retention_seconds=3600, clock=clock)

    def test_no_samples(self, monitor):
        assert monitor.get_stats() is None
        assert monitor.get_endpoint_stats() == {}

    def test_stats(self, monitor):
        for duration in range(1, 21):
            monitor.record("GET", "/api/posts", duration * 100, 200)
        monitor.record("GET", "/api/posts", 50, 500)

        stats = monitor.get_stats()

        assert stats["totalRequests"] == 21
        assert stats["slowRequests"] == 10
        assert stats["p95Duration"] == 1900
        assert stats["errorRate"] == pytest.approx(1 / 21)

    def test_endpoint_aggregates(self, monitor):
        monitor.record("GET", "/api/posts/1", 100, 200)
        monitor.record("GET", "/api/posts/2", 300, 200)
        monitor.record("POST", "/api/posts", 50, 201)

        endpoints = monitor.get_endpoint_stats()

        assert set(endpoints) == {"GET /api/posts/:id", "POST /api/posts"}
        posts = endpoints["GET /api/posts/:id"]
        assert posts["count"] == 2
        assert posts["avgDuration"] == 200
        assert posts["maxDuration"] == 300

    def test_aggregates_expire(self, monitor, clock):
        monitor.record("GET", "/api/posts", 100, 200)
        clock.advance(3601)
        assert monitor.get_endpoint_stats() == {}

    def test_samples_are_bounded(self, clock):
        monitor = PerformanceMonitor(capacity=5, clock=clock)
        for _ in range(12):
            monitor.record("GET", "/", 1, 200)
        assert monitor.get_stats()["totalRequests"] == 5

    def test_route_template_is_preferred(self, monitor):
        sample = monitor.record("GET", "/api/posts/hello-world", 10, 200, route="/api/posts/{slug}")
        assert sample.path == "/api/posts/{slug}"
        assert list(monitor.get_endpoint_stats()) == ["GET /api/posts/{slug}"]

    def test_not_found_paths_share_one_endpoint(self, monitor):
        for i in range(20):
            monitor.record("GET", f"/nope-{i}abc", 5, 404)
        assert monitor.get_endpoint_stats()["GET unmatched"]["count"] == 20

    def test_unknown_methods_share_one_label(self, monitor):
        monitor.record("BREW", "/", 5, 405, route="/")
        monitor.record("get", "/", 5, 200, route="/")
        assert set(monitor.get_endpoint_stats()) == {"OTHER /", "GET /"}

    def test_endpoints_are_capped(self, clock):
        metrics = MetricsRegistry()
        monitor = PerformanceMonitor(max_endpoints=3, metrics=metrics, clock=clock)
        for i in range(10):
            monitor.record("GET", f"/page-{i}", 5, 200)

        endpoints = monitor.get_endpoint_stats()
        assert len(endpoints) == 4
        assert endpoints["GET other"]["count"] == 7
        assert metrics.get_sample_value(
            "http_requests_total", {"method": "GET", "endpoint": "other", "status_code": "200"}
        ) == 7.0

    def test_cap_survives_aggregate_expiry(self, clock):
        metrics = MetricsRegistry()
        monitor = PerformanceMonitor(max_endpoints=2, retention_seconds=60, metrics=metrics, clock=clock)
        monitor.record("GET", "/a", 5, 200)
        monitor.record("GET", "/b", 5, 200)
        clock.advance(61)

        monitor.record("GET", "/c", 5, 200)

        assert list(monitor.get_endpoint_stats()) == ["GET other"]
        assert metrics.get_sample_value(
            "http_requests_total", {"method": "GET", "endpoint": "/c", "status_code": "200"}
        ) is None

    def test_non_positive_endpoint_cap_rejected(self):
        with pytest.raises(ValueError):
            PerformanceMonitor(max_endpoints=0)

    def test_records_metrics(self, clock):
        metrics = MetricsRegistry()
        monitor = PerformanceMonitor(metrics=metrics, clock=clock)
        monitor.record("GET", "/api/posts/9", 120, 200)
        assert metrics.get_sample_value(
            "http_requests_total", {"method": "GET", "endpoint": "/api/posts/:id", "status_code": "200"}
        ) == 1.0


class TestMetricsRegistry:
    """Prometheus registry."""

    def test_registries_are_independent(self):
        first, second = MetricsRegistry(), MetricsRegistry()
        first.record_rate_limit_rejection("auth")
        assert second.get_sample_value("rate_limit_rejections_total", {"tier": "auth"}) is None

    def test_export(self):
        metrics = MetricsRegistry()
        metrics.record_security_event("waf_block", "critical")
        content, content_type = metrics.export()
        assert b"cms_security_events_total" in content
        assert content_type.startswith("text/plain")


class TestLogRedaction:
    """Sensitive values in log records."""

    def test_redacts_nested_fields(self):
        data = {
            "email": "a@example.com",
            "password": "hunter2",
            "headers": {"Authorization": "Bearer abc", "accept": "json"},
            "items": [{"api_key": "k"}],
        }

        assert redact_sensitive(data) == {
            "email": "a@example.com",
            "password": REDACTED,
            "headers": {"Authorization": REDACTED, "accept": "json"},
            "items": [{"api_key": REDACTED}],
        }

    def test_request_context_binding(self):
        tokens = bind_request_context("req-1")
        try:
            assert request_id.get() == "req-1"
        finally:
            reset_request_context(tokens)
        assert request_id.get() is None
