"""Configuration management for the CMS security pipeline."""

from .base import BaseConfig
from .redis import RedisConfig
from .logging import LoggingConfig
from .security import SecurityConfig
from .settings import Settings, get_settings

__all__ = [
    "BaseConfig",
    "RedisConfig",
    "LoggingConfig",
    "SecurityConfig",
    "Settings",
    "get_settings",
]
