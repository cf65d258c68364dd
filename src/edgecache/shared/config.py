"""
Shared Configuration - Application Settings and Environment Management
Centralized configuration management for EdgeCache.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Cache store and Redis settings
- Public endpoint (ETag / rate limit) settings
- Logging settings
"""
from typing import Dict, List, Optional
from enum import Enum

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisSettings(BaseSettings):
    """Redis configuration settings. Leaving REDIS_URL unset keeps the cache in memory."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    redis_url: Optional[str] = Field(None, description="Remote cache store URL")
    redis_key_prefix: str = Field("edgecache:", description="Namespace for every Redis key")
    redis_timeout: int = Field(5, description="Socket timeout in seconds")
    redis_pool_size: int = Field(10, description="Maximum pooled connections")

    @field_validator("redis_url", mode="before")
    @classmethod
    def empty_url_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v


class CacheSettings(BaseSettings):
    """Response cache settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    cache_enabled: bool = Field(True, description="Master switch for response caching")
    cache_default_ttl: int = Field(300, description="Default TTL in seconds")
    cache_ttl_short: int = Field(60)
    cache_ttl_medium: int = Field(300)
    cache_ttl_long: int = Field(3600)
    cache_ttl_day: int = Field(86400)
    cache_max_entries: int = Field(10000, description="LRU bound of the in-memory store")
    cache_cleanup_interval_seconds: int = Field(120, description="Expired-entry sweep period")
    settings_cache_ttl: int = Field(300, description="TTL of the settings gate snapshot")

    @field_validator(
        "cache_default_ttl", "cache_ttl_short", "cache_ttl_medium",
        "cache_ttl_long", "cache_ttl_day", "settings_cache_ttl",
    )
    @classmethod
    def validate_ttl(cls, v):
        if v <= 0:
            raise ValueError("TTL must be a positive number of seconds")
        return v

    @field_validator("cache_max_entries")
    @classmethod
    def validate_max_entries(cls, v):
        if v < 1:
            raise ValueError("Cache must hold at least one entry")
        return v

    def ttl_categories(self) -> Dict[str, int]:
        """TTL per cache category."""
        return {
            "short": self.cache_ttl_short,
            "medium": self.cache_ttl_medium,
            "long": self.cache_ttl_long,
            "day": self.cache_ttl_day,
        }

    def resolve_ttl(self, ttl=None) -> int:
        """Resolve seconds, a category name, or None (default) to seconds."""
        if ttl is None:
            return self.cache_default_ttl
        if isinstance(ttl, str):
            categories = self.ttl_categories()
            if ttl not in categories:
                raise ValueError(f"Unknown cache TTL category: {ttl}")
            return categories[ttl]
        if ttl <= 0:
            raise ValueError("TTL must be a positive number of seconds")
        return int(ttl)


class PublicEndpointSettings(BaseSettings):
    """Settings shared by the public, unauthenticated endpoints."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    public_cache_max_age: int = Field(300, description="Cache-Control max-age for ETag responses")
    public_rate_limit_enabled: bool = Field(True)
    public_rate_limit_window_seconds: int = Field(60)
    public_rate_limit_max: int = Field(30)
    rate_limit_whitelist: str = Field("", description="Comma-separated client IPs")
    public_path_prefixes: str = Field("/api/public", description="Comma-separated path prefixes")
    private_path_prefixes: str = Field("/api/admin", description="Comma-separated path prefixes")

    @field_validator("public_rate_limit_window_seconds", "public_rate_limit_max", "public_cache_max_age")
    @classmethod
    def validate_positive(cls, v):
        if v < 0:
            raise ValueError("Value must not be negative")
        return v

    @staticmethod
    def _split(value: str) -> List[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def whitelisted_ips(self) -> List[str]:
        return self._split(self.rate_limit_whitelist)

    @property
    def public_prefixes(self) -> List[str]:
        return self._split(self.public_path_prefixes)

    @property
    def private_prefixes(self) -> List[str]:
        return self._split(self.private_path_prefixes)


class MonitoringSettings(BaseSettings):
    """Monitoring and logging configuration settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    log_level: LogLevel = Field(LogLevel.INFO)
    log_format: str = Field("colored", description="json, colored or standard")
    log_file: Optional[str] = Field(None)

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "colored", "standard"):
            raise ValueError("log_format must be one of: json, colored, standard")
        return v


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application settings
    environment: Environment = Field(Environment.DEVELOPMENT)
    debug: bool = Field(False)
    app_name: str = Field("EdgeCache")
    app_version: str = Field("1.0.0")

    # Component settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    public: PublicEndpointSettings = Field(default_factory=PublicEndpointSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("debug")
    @classmethod
    def validate_debug_in_production(cls, v, info):
        if info.data.get("environment") == Environment.PRODUCTION and v:
            raise ValueError("Debug mode should not be enabled in production")
        return v

    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    def is_testing(self) -> bool:
        """Check if running in testing mode."""
        return self.environment == Environment.TESTING


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """
    Get application settings.
    This function can be used as a FastAPI dependency.
    """
    return settings


def get_cache_settings() -> CacheSettings:
    """Get cache settings."""
    return settings.cache


def get_redis_settings() -> RedisSettings:
    """Get Redis settings."""
    return settings.redis


def get_public_settings() -> PublicEndpointSettings:
    """Get public endpoint settings."""
    return settings.public


def validate_configuration(config: Optional[Settings] = None) -> List[str]:
    """
    Validate the current configuration and return any errors.

    Returns:
        List of validation error messages
    """
    config = config or settings
    errors = []

    if config.is_production():
        if not config.redis.redis_url:
            errors.append("REDIS_URL is not configured; cache will use the in-memory fallback")
        if config.monitoring.log_format != "json":
            errors.append("LOG_FORMAT should be json in production")

    if config.cache.settings_cache_ttl > config.cache.cache_ttl_day:
        errors.append("SETTINGS_CACHE_TTL is longer than the day TTL category")

    if config.public.public_rate_limit_enabled and config.public.public_rate_limit_max == 0:
        errors.append("PUBLIC_RATE_LIMIT_MAX of 0 rejects every public request")

    return errors


def get_config_summary(config: Optional[Settings] = None) -> dict:
    """
    Get a summary of the current configuration (without sensitive data).

    Returns:
        Dictionary with configuration summary
    """
    config = config or settings
    return {
        "environment": config.environment,
        "debug": config.debug,
        "app_name": config.app_name,
        "app_version": config.app_version,
        "cache": {
            "enabled": config.cache.cache_enabled,
            "default_ttl": config.cache.cache_default_ttl,
            "ttl_categories": config.cache.ttl_categories(),
            "max_entries": config.cache.cache_max_entries,
            "redis_configured": bool(config.redis.redis_url),
        },
        "public": {
            "max_age": config.public.public_cache_max_age,
            "rate_limit_enabled": config.public.public_rate_limit_enabled,
            "rate_limit_window_seconds": config.public.public_rate_limit_window_seconds,
            "rate_limit_max": config.public.public_rate_limit_max,
        },
        "monitoring": {
            "log_level": config.monitoring.log_level,
            "log_format": config.monitoring.log_format,
        },
    }
