"""HTTP API for the CMS security pipeline."""

from . import health, security

__all__ = ["health", "security"]
