# Shared synchronous Redis client for cache eviction and schedule overrides.
import logging
import threading
from typing import Optional

import redis

from app.config import settings

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_pool: Optional[redis.ConnectionPool] = None
_client: Optional[redis.Redis] = None


def init_redis(url: Optional[str] = None, pool_size: Optional[int] = None) -> redis.Redis:
	"""Create the process-wide pool. The server is not contacted here."""
	global _pool, _client

	with _lock:
		if _client is not None:
			return _client
		_pool = redis.ConnectionPool.from_url(
			url or settings.REDIS_URL,
			max_connections=pool_size or settings.REDIS_POOL_SIZE,
			decode_responses=True,
			socket_connect_timeout=5,
			socket_timeout=5,
			health_check_interval=30,
		)
		_client = redis.Redis(connection_pool=_pool)
		logger.info(f"Redis pool created for {url or settings.REDIS_URL}")
		return _client


def get_redis() -> redis.Redis:
	return _client if _client is not None else init_redis()


def close_redis():
	global _pool, _client

	with _lock:
		if _client is not None:
			_client.close()
		if _pool is not None:
			_pool.disconnect()
		_client, _pool = None, None
	logger.info("Redis connections closed")


def check_redis_connection() -> bool:
	try:
		return bool(get_redis().ping())
	except redis.RedisError as e:
		logger.error(f"Redis health check failed: {e}")
		return False
