"""
Observability package for the CMS security pipeline.

Provides structured logging, metrics and request performance tracking.
"""

from .logging import get_logger, StructuredLogger, SecurityLogger, setup_logging, redact_sensitive
from .metrics import MetricsRegistry
from .performance import PerformanceMonitor, PerformanceSample, normalize_path

__all__ = [
    "get_logger",
    "StructuredLogger",
    "SecurityLogger",
    "setup_logging",
    "redact_sensitive",
    "MetricsRegistry",
    "PerformanceMonitor",
    "PerformanceSample",
    "normalize_path",
]
