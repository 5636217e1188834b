"""
Shared configuration management for the CDN gateway.
"""

from typing import Dict, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CDN_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="production")
    log_level: str = Field(default="info")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Security
    api_key: str = Field(default="")
    trust_forwarded_headers: bool = Field(default=False)

    # Uploads
    max_file_size_mb: int = Field(default=50, ge=1)
    public_base_url: str = Field(default="")

    # Response cache
    cache_default_ttl: int = Field(default=3600, ge=0)
    cache_check_period: float = Field(default=600.0, gt=0)
    cache_max_entries: int = Field(default=1000, ge=1)
    cache_max_body_bytes: int = Field(default=5 * 1024 * 1024, ge=0)

    # Rate limiting (fixed windows)
    rate_limit_upload_window_minutes: float = Field(default=15, gt=0)
    rate_limit_upload_max: int = Field(default=20, ge=1)
    rate_limit_download_window_minutes: float = Field(default=1, gt=0)
    rate_limit_download_max: int = Field(default=200, ge=1)
    rate_limit_api_window_minutes: float = Field(default=15, gt=0)
    rate_limit_api_max: int = Field(default=100, ge=1)

    # Object storage backend
    storage_bucket: str = Field(default="cdn-files")
    storage_prefix: str = Field(default="cdn/")
    storage_endpoint_url: str = Field(default="")
    storage_region: str = Field(default="us-east-1")
    storage_access_key_id: str = Field(default="")
    storage_secret_access_key: str = Field(default="")
    storage_public_read: bool = Field(default=False)
    storage_quota_bytes: int = Field(default=15 * 1024 ** 3, gt=0)

    @property
    def is_development(self) -> bool:
        return self.env.lower() == "development"

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024

    def rate_limit_rules(self) -> Dict[str, Tuple[float, int]]:
        """Window length in seconds and request budget per route class."""
        return {
            "upload": (self.rate_limit_upload_window_minutes * 60, self.rate_limit_upload_max),
            "download": (self.rate_limit_download_window_minutes * 60, self.rate_limit_download_max),
            "api": (self.rate_limit_api_window_minutes * 60, self.rate_limit_api_max),
        }


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "cdn"


def get_config(service_name: str, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, **overrides)
