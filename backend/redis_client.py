"""
Redis client for export job state and pub/sub status updates
"""

import json
import structlog
from typing import Optional, Dict, Any
from redis import Redis, ConnectionPool
from redis.exceptions import RedisError, ConnectionError
from config import settings

logger = structlog.get_logger()


class RedisClient:
    """Redis client with connection pooling and helper methods"""

    def __init__(self, url: Optional[str] = None):
        """Initialize Redis client with connection pool"""
        self.url = url or settings.REDIS_URL
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._connect()

    def _connect(self):
        """Establish Redis connection with connection pool"""
        try:
            self._pool = ConnectionPool.from_url(
                self.url,
                max_connections=settings.REDIS_MAX_CONNECTIONS,
                socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=settings.REDIS_SOCKET_CONNECT_TIMEOUT,
                retry_on_timeout=settings.REDIS_RETRY_ON_TIMEOUT,
                health_check_interval=settings.REDIS_HEALTH_CHECK_INTERVAL,
                decode_responses=True
            )
            self._client = Redis(connection_pool=self._pool)

            # Test connection
            self._client.ping()
            logger.info("redis_connected", url=self.url)

        except ConnectionError as e:
            logger.error("redis_connection_failed", error=str(e))
            raise

    def get_client(self) -> Redis:
        """Get Redis client instance"""
        if self._client is None:
            self._connect()
        return self._client

    def ping(self) -> bool:
        """Check if Redis is connected"""
        try:
            return self._client.ping()
        except RedisError as e:
            logger.error("redis_ping_failed", error=str(e))
            return False

    def close(self):
        """Close Redis connection"""
        if self._client:
            self._client.close()
            logger.info("redis_connection_closed")

    # ===== Pub/Sub Operations =====

    def publish_status(self, job_id: str, status: str, **kwargs) -> bool:
        """
        Publish export job status update to subscribers

        Args:
            job_id: Job identifier
            status: Status value
            **kwargs: Additional metadata (progress, failed_stage, ...)

        Returns:
            bool: Success status
        """
        try:
            message = json.dumps({
                "job_id": job_id,
                "status": status,
                **kwargs
            })

            self._client.publish(settings.JOB_STATUS_CHANNEL, message)
            logger.debug("status_published", job_id=job_id, status=status)
            return True

        except RedisError as e:
            logger.error("publish_status_failed", job_id=job_id, error=str(e))
            return False


_redis_client: Optional[RedisClient] = None


def get_redis_client() -> RedisClient:
    """
    Get the shared Redis client, connecting on first use.

    Only the Redis job store needs Redis, so nothing connects at import time.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = RedisClient()
    return _redis_client
