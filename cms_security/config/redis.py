"""Redis configuration for the CMS security pipeline."""

from typing import Optional
from pydantic import Field
from .base import BaseConfig


class RedisConfig(BaseConfig):
    """Redis configuration settings."""

    # Redis connection settings
    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: Optional[str] = Field(default=None, description="Redis password")
    redis_db: int = Field(default=0, description="Redis database number")
    redis_ssl: bool = Field(default=False, description="Enable Redis SSL")

    # Connection pool settings
    redis_max_connections: int = Field(default=20, description="Redis max connections")
    redis_retry_on_timeout: bool = Field(default=True, description="Retry on timeout")

    # Timeout settings
    redis_socket_timeout: int = Field(default=5, description="Redis socket timeout in seconds")
    redis_socket_connect_timeout: int = Field(default=5, description="Redis socket connect timeout")

    # Rate limiting settings
    rate_limit_key_prefix: str = Field(default="rl:", description="Rate limit key prefix")
    speed_limit_key_prefix: str = Field(default="sd:", description="Speed limit key prefix")

    @property
    def redis_url(self) -> str:
        """Build Redis URL from components."""
        scheme = "rediss" if self.redis_ssl else "redis"
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"{scheme}://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    def get_connection_config(self) -> dict:
        """Get Redis connection configuration."""
        return {
            "socket_timeout": self.redis_socket_timeout,
            "socket_connect_timeout": self.redis_socket_connect_timeout,
            "retry_on_timeout": self.redis_retry_on_timeout,
            "max_connections": self.redis_max_connections,
            "decode_responses": True,
            "encoding": "utf-8",
        }
