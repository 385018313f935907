# core/redis_client.py
"""
Redis client factory with connection pooling and error handling.

Backs the durable `redis` queue backend. The pool is created lazily on first
use and owned by the composition root, not by a module global.
"""

import redis
from redis.connection import ConnectionPool
from typing import Optional
from webhook_pipeline.core.config import Settings
from webhook_pipeline.core.logger import logger


class RedisClient:
    """
    Redis client with connection pooling.

    Thread-safe connection pool that handles:
    - Automatic reconnection on failure
    - TLS/SSL for ElastiCache encryption
    - Connection timeout configuration
    - Health checking
    """

    def __init__(self, settings: Settings):
        self._settings = settings
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = None

    def _initialize_pool(self):
        """
        Create connection pool with production-ready settings.
        """
        settings = self._settings
        logger.info(
            "Initializing Redis connection pool host=%s port=%s ssl=%s max_connections=%s",
            settings.REDIS_HOST, settings.REDIS_PORT, settings.REDIS_SSL, settings.REDIS_MAX_CONNECTIONS
        )

        pool_kwargs = {
            "host": settings.REDIS_HOST,
            "port": settings.REDIS_PORT,
            "db": settings.REDIS_DB,
            "decode_responses": True,  # Auto-decode bytes to strings
            "socket_timeout": settings.REDIS_SOCKET_TIMEOUT,
            "socket_connect_timeout": settings.REDIS_SOCKET_CONNECT_TIMEOUT,
            "max_connections": settings.REDIS_MAX_CONNECTIONS,
            "retry_on_timeout": True,
            "health_check_interval": 30  # Check connection health every 30s
        }

        """
        TLS/SSL configuration for ElastiCache encryption in-transit
        """
        if settings.REDIS_SSL:
            pool_kwargs["connection_class"] = redis.SSLConnection
            pool_kwargs["ssl_cert_reqs"] = None  # AWS manages certificates

        if settings.REDIS_PASSWORD:
            pool_kwargs["password"] = settings.REDIS_PASSWORD

        self._pool = ConnectionPool(**pool_kwargs)
        self._client = redis.Redis(connection_pool=self._pool)

    def get_client(self) -> redis.Redis:
        """
        Get Redis client instance.

        Returns:
            redis.Redis: Thread-safe Redis client
        """
        if self._client is None:
            self._initialize_pool()

        return self._client

    def health_check(self) -> bool:
        """
        Check Redis connection health.

        Returns:
            bool: True if Redis is reachable, False otherwise
        """
        try:
            self.get_client().ping()
            return True
        except redis.RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    def close(self):
        """
        Close connection pool (called on application shutdown).
        """
        if self._pool:
            self._pool.disconnect()
            logger.info("Redis connection pool closed")
