"""
Request performance tracking for the CMS security pipeline.

Samples are kept in a bounded in-memory window and folded into per-endpoint
aggregates keyed by method and endpoint. The endpoint is the matched route
template when the router reports one, otherwise the normalized path, so
``/api/posts/42`` and ``/api/posts/43`` share one ``/api/posts/:id`` entry.
Unrouted 404s share the ``unmatched`` endpoint and the number of distinct
endpoints is capped, so clients cannot grow the aggregates or metric label sets.
"""

import re
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Any, Optional, Set, Tuple

from .logging import get_logger
from .metrics import MetricsRegistry

_ID_SEGMENT = re.compile(
    r'^(?:\d+|[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12})$'
)

UNMATCHED_ENDPOINT = "unmatched"
OVERFLOW_ENDPOINT = "other"

HTTP_METHODS = frozenset({"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "TRACE", "CONNECT"})


def normalize_path(path: str) -> str:
    """Replace numeric and UUID path segments with ``:id``."""
    segments = path.split('/')
    return '/'.join(':id' if _ID_SEGMENT.match(segment) else segment for segment in segments)


@dataclass(frozen=True)
class PerformanceSample:
    """A single completed request."""
    method: str
    path: str
    duration_ms: float
    status_code: int
    timestamp: float


@dataclass
class EndpointStats:
    """Running aggregate for one (method, path) pair."""
    count: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    last_updated: float = field(default=0.0)

    @property
    def avg_duration_ms(self) -> float:
        return self.total_duration_ms / self.count if self.count else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "totalDuration": round(self.total_duration_ms, 2),
            "avgDuration": round(self.avg_duration_ms, 2),
            "maxDuration": round(self.max_duration_ms, 2),
            "lastUpdated": self.last_updated,
        }


class PerformanceMonitor:
    """Collects request samples and per-endpoint aggregates."""

    def __init__(self,
                 capacity: int = 1000,
                 slow_threshold_ms: float = 1000,
                 retention_seconds: float = 7 * 24 * 60 * 60,
                 max_endpoints: int = 500,
                 metrics: Optional[MetricsRegistry] = None,
                 clock: Callable[[], float] = time.time):
        if max_endpoints <= 0:
            raise ValueError("max_endpoints must be positive")
        self.samples: Deque[PerformanceSample] = deque(maxlen=capacity)
        self.aggregates: Dict[Tuple[str, str], EndpointStats] = {}
        # Endpoint labels ever handed to metrics; prometheus series are never removed
        self._endpoints: Set[str] = set()
        self.slow_threshold_ms = slow_threshold_ms
        self.retention_seconds = retention_seconds
        self.max_endpoints = max_endpoints
        self.metrics = metrics
        self._clock = clock
        self.logger = get_logger("performance_monitor")

    @staticmethod
    def endpoint_for(path: str, status_code: int, route: Optional[str] = None) -> str:
        """The endpoint label for a request: route template, ``unmatched`` or normalized path."""
        if route:
            return route
        if status_code == 404:
            return UNMATCHED_ENDPOINT
        return normalize_path(path)

    def record(self,
               method: str,
               path: str,
               duration_ms: float,
               status_code: int,
               route: Optional[str] = None) -> PerformanceSample:
        """Record a completed request."""
        now = self._clock()
        method = method.upper()
        if method not in HTTP_METHODS:
            method = "OTHER"

        self._expire_aggregates(now)
        endpoint = self.endpoint_for(path, status_code, route)
        if endpoint not in self._endpoints:
            if len(self._endpoints) >= self.max_endpoints:
                endpoint = OVERFLOW_ENDPOINT
            else:
                self._endpoints.add(endpoint)
        key = (method, endpoint)

        sample = PerformanceSample(
            method=method,
            path=key[1],
            duration_ms=duration_ms,
            status_code=status_code,
            timestamp=now,
        )
        self.samples.append(sample)

        stats = self.aggregates.setdefault(key, EndpointStats())
        stats.count += 1
        stats.total_duration_ms += duration_ms
        stats.max_duration_ms = max(stats.max_duration_ms, duration_ms)
        stats.last_updated = now

        if self.metrics:
            self.metrics.record_http_request(method, sample.path, status_code, duration_ms / 1000)

        if duration_ms > self.slow_threshold_ms:
            self.logger.warning(
                "Slow request detected",
                method=method,
                path=path,
                endpoint=sample.path,
                duration_ms=round(duration_ms, 2),
                status_code=status_code,
                threshold_ms=self.slow_threshold_ms,
            )

        return sample

    def _expire_aggregates(self, now: float) -> None:
        cutoff = now - self.retention_seconds
        stale = [k for k, stats in self.aggregates.items() if stats.last_updated < cutoff]
        for k in stale:
            del self.aggregates[k]

    def get_stats(self) -> Optional[Dict[str, Any]]:
        """Summarize the samples currently held in memory."""
        if not self.samples:
            return None

        durations = sorted(s.duration_ms for s in self.samples)
        total = len(durations)
        p95_index = min(total - 1, int(total * 0.95))

        return {
            "totalRequests": total,
            "avgDuration": round(sum(durations) / total, 2),
            "p95Duration": round(durations[p95_index], 2),
            "slowRequests": sum(1 for d in durations if d > self.slow_threshold_ms),
            "errorRate": sum(1 for s in self.samples if s.status_code >= 400) / total,
        }

    def get_endpoint_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per-endpoint aggregates keyed as ``METHOD path``."""
        self._expire_aggregates(self._clock())
        return {
            f"{method} {path}": stats.to_dict()
            for (method, path), stats in sorted(self.aggregates.items())
        }
