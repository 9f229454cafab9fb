"""
Configuration management for the Marketplace Bookings Service.
Uses Zero Python SDK for secure configuration, with environment variables
as the fallback source when no Zero token is provided.
"""

import os
import asyncio
from urllib.parse import quote_plus
from typing import Dict, Any, Optional
import logging
from zero_python_sdk import zero

logger = logging.getLogger(__name__)


class ZeroSecretsManager:
    """
    Reads one secret group from Zero, once per process.
    Keys are stored hyphenated and lower-case, e.g. ``jwt-secret``.
    """

    def __init__(self, zero_token: str, group: str = "marketplace", caller_name: str = "marketplace"):
        self.zero_token = zero_token
        self.group = group
        self.caller_name = caller_name
        self._secrets: Optional[Dict[str, str]] = None

    def _fetch_group(self) -> Dict[str, str]:
        fetched = zero(token=self.zero_token, pick=[self.group], caller_name=self.caller_name).fetch()
        return fetched.get(self.group) or {}

    async def load(self) -> Dict[str, str]:
        """Fetch the group on first use. A failed fetch leaves only the environment."""
        if self._secrets is None:
            loop = asyncio.get_running_loop()
            try:
                self._secrets = await loop.run_in_executor(None, self._fetch_group)
                logger.info(f"Loaded {len(self._secrets)} secrets from Zero group '{self.group}'")
            except Exception as e:
                logger.error(f"Failed to fetch secrets from Zero, using environment only: {e}")
                self._secrets = {}
        return self._secrets

    async def get_secret(self, key: str) -> Optional[str]:
        secrets = await self.load()
        return secrets.get(key.lower().replace("_", "-"))


class MarketplaceConfig:
    """
    Marketplace service configuration manager.
    Reads Zero secrets first, then the process environment.
    """

    def __init__(self):
        self.zero_token = os.getenv("ZERO_TOKEN")
        self.secrets_manager = ZeroSecretsManager(self.zero_token) if self.zero_token else None
        if not self.secrets_manager:
            logger.info("ZERO_TOKEN not set, reading configuration from environment")

    async def get_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Resolve a configuration value.

        Args:
            key: Upper-case configuration key, e.g. ``DB_HOST``
            default: Value returned when no source defines the key

        Returns:
            The configured string value or the default
        """
        value = None
        if self.secrets_manager:
            value = await self.secrets_manager.get_secret(key)
        if value is None:
            value = os.getenv(key)
        return value if value is not None else default

    async def get_database_url(self) -> str:
        """Get the database connection URL."""
        explicit_url = await self.get_value("DATABASE_URL")
        if explicit_url:
            return explicit_url

        host = await self.get_value("DB_HOST", "localhost")
        port = await self.get_value("DB_PORT", "5432")
        name = await self.get_value("DB_NAME", "marketplace")
        user = await self.get_value("DB_USER", "marketplace")
        password = await self.get_value("DB_PASSWORD", "marketplace123")

        return f"postgresql://{user}:{quote_plus(password)}@{host}:{port}/{name}"

    async def get_redis_url(self) -> str:
        """Get the Redis connection URL."""
        host = await self.get_value("REDIS_HOST", "localhost")
        port = await self.get_value("REDIS_PORT", "6379")
        password = await self.get_value("REDIS_PASSWORD")
        use_tls = await self.get_value("REDIS_USE_TLS") == "true"

        protocol = "rediss://" if use_tls else "redis://"

        if password:
            return f"{protocol}:{password}@{host}:{port}"
        return f"{protocol}{host}:{port}"

    async def get_jwt_secret(self) -> str:
        """Get JWT secret key."""
        return await self.get_value("JWT_SECRET", "your-secret-key-change-in-production")

    async def get_jwt_algorithm(self) -> str:
        """Get JWT algorithm."""
        return await self.get_value("JWT_ALGORITHM", "HS256")

    async def get_cache_config(self) -> Dict[str, Any]:
        """Get cache TTL configuration for read aggregates."""
        return {
            "enable_cache": await self.get_value("ENABLE_CACHE", "true") != "false",
            "review_stats_ttl": int(await self.get_value("CACHE_TTL_REVIEW_STATS", "300")),
            "rsvp_stats_ttl": int(await self.get_value("CACHE_TTL_RSVP_STATS", "60")),
        }

    async def get_consistency_config(self) -> Dict[str, Any]:
        """Get locking configuration used by all mutating operations."""
        return {
            "lock_timeout_seconds": int(await self.get_value("LOCK_TIMEOUT_SECONDS", "30")),
            "lock_blocking_timeout_seconds": int(await self.get_value("LOCK_BLOCKING_TIMEOUT_SECONDS", "10")),
            "enable_distributed_locks": await self.get_value("ENABLE_DISTRIBUTED_LOCKS") == "true",
        }

    async def get_notification_config(self) -> Dict[str, Any]:
        """Get notification delivery configuration."""
        return {
            "enable_realtime_push": await self.get_value("ENABLE_REALTIME_PUSH", "true") != "false",
            "enable_email_notifications": await self.get_value("ENABLE_EMAIL_NOTIFICATIONS") == "true",
            "notification_expiry_days": int(await self.get_value("NOTIFICATION_EXPIRY_DAYS", "30")),
            "channel_prefix": await self.get_value("NOTIFICATION_CHANNEL_PREFIX", "marketplace:notifications"),
        }

    async def get_review_config(self) -> Dict[str, Any]:
        """Get review pipeline configuration."""
        return {
            "edit_window_days": int(await self.get_value("REVIEW_EDIT_WINDOW_DAYS", "7")),
            "auto_flag_report_threshold": int(await self.get_value("REVIEW_AUTO_FLAG_REPORTS", "3")),
        }

    async def get_database_config(self) -> Dict[str, Any]:
        """Get database pool configuration."""
        return {
            "pool_size": int(await self.get_value("DB_POOL_SIZE", "20")),
            "max_overflow": int(await self.get_value("DB_MAX_OVERFLOW", "30")),
            "pool_timeout": int(await self.get_value("DB_POOL_TIMEOUT", "30")),
            "pool_recycle": int(await self.get_value("DB_POOL_RECYCLE", "3600")),
        }


# Global config instance
config = MarketplaceConfig()
