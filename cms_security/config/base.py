"""Base configuration classes for the CMS security pipeline."""

from typing import Any, Dict, List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application settings
    app_name: str = Field(default="CMS Security Pipeline", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")
    environment: str = Field(default="development", description="Environment name")

    # Server settings
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Health check settings
    health_check_path: str = Field(default="/health", description="Health check endpoint")

    # Metrics settings
    metrics_path: str = Field(default="/metrics", description="Metrics endpoint")
    enable_metrics: bool = Field(default=True, description="Enable metrics collection")

    # CORS settings
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        description="CORS allowed origins"
    )
    cors_methods: List[str] = Field(
        default=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        description="CORS allowed methods"
    )
    cors_headers: List[str] = Field(
        default=[
            "Origin", "X-Requested-With", "Content-Type", "Accept",
            "Authorization", "Cache-Control", "X-Access-Token",
        ],
        description="CORS allowed headers"
    )

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment.lower() == "test"

    def get_service_info(self) -> Dict[str, Any]:
        """Get service information for health checks."""
        return {
            "name": self.app_name,
            "version": self.app_version,
            "environment": self.environment,
            "debug": self.debug,
        }
