"""Logging configuration for the CMS security pipeline."""

from typing import Dict
from pydantic import Field
from .base import BaseConfig


class LoggingConfig(BaseConfig):
    """Logging configuration settings."""

    log_level: str = Field(default="INFO", description="Log level")
    json_logging: bool = Field(default=True, description="Enable JSON logging")
    enable_correlation: bool = Field(default=True, description="Add correlation and request IDs to logs")

    # Logger-specific settings
    logger_levels: Dict[str, str] = Field(
        default={
            "uvicorn": "INFO",
            "httpx": "WARNING",
            "redis": "WARNING",
        },
        description="Logger-specific log levels"
    )

    @property
    def log_format(self) -> str:
        """Renderer used by structlog."""
        return "json" if self.json_logging else "console"
