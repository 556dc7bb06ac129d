"""Settings management for the CMS security pipeline."""

from functools import lru_cache

from .redis import RedisConfig
from .logging import LoggingConfig
from .security import SecurityConfig


class Settings(
    RedisConfig,
    LoggingConfig,
    SecurityConfig,
):
    """Combined settings for the CMS security pipeline."""

    service_name: str = "cms-security"
    service_version: str = "0.1.0"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
